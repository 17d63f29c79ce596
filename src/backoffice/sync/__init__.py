"""Notion synchronization engine.

Moves entity state from the relational store to the Notion workspace and
back:

- SyncJobQueue: durable, coalescing job queue with backoff
- QueueProcessor: claims due jobs and dispatches to per-entity handlers
- NotionWorkspaceAdapter: rate-limited, retrying Notion API client
- SyncService: local mutation hooks and bulk operations
- ReconciliationReporter: read-only drift report
"""

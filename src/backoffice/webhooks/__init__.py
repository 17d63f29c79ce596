"""Inbound webhook ingestion (Stripe payments, Notion page changes)."""

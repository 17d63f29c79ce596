"""Per-entity-type Notion sync handlers.

- LeadSyncHandler: leads database pages
- ProjectSyncHandler: projects database pages (host milestone to-dos)
- MilestoneSyncHandler: to-do blocks inside the project page
- DeliverableSyncHandler: deliverables database pages

build_handlers() wires each handler to its configured Notion database.
"""

from __future__ import annotations

from src.backoffice.config import Settings
from src.backoffice.sync.handlers.base import EntitySyncHandler
from src.backoffice.sync.handlers.deliverable import DeliverableSyncHandler
from src.backoffice.sync.handlers.lead import LeadSyncHandler
from src.backoffice.sync.handlers.milestone import MilestoneSyncHandler
from src.backoffice.sync.handlers.project import ProjectSyncHandler
from src.backoffice.sync.schemas import EntityType


def build_handlers(settings: Settings) -> dict[EntityType, EntitySyncHandler]:
    """Instantiate one handler per entity type from settings."""
    return {
        EntityType.LEAD: LeadSyncHandler(settings.NOTION_LEADS_DATABASE_ID),
        EntityType.PROJECT: ProjectSyncHandler(settings.NOTION_PROJECTS_DATABASE_ID),
        EntityType.MILESTONE: MilestoneSyncHandler(),
        EntityType.DELIVERABLE: DeliverableSyncHandler(settings.NOTION_DELIVERABLES_DATABASE_ID),
    }


__all__ = [
    "DeliverableSyncHandler",
    "EntitySyncHandler",
    "LeadSyncHandler",
    "MilestoneSyncHandler",
    "ProjectSyncHandler",
    "build_handlers",
]

"""
FastAPI Dependencies

The orchestrator and export packager are built once per process in the
application lifespan and stored on ``app.state``; one batch per session.
"""

from typing import Optional

import httpx
from fastapi import Request

from etsyflow.core.config import Settings
from etsyflow.core.storage import PreviewStore
from etsyflow.pipeline.export import ExportPackager
from etsyflow.pipeline.orchestrator import BatchOrchestrator


def build_orchestrator(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    preview_store: Optional[PreviewStore] = None
) -> BatchOrchestrator:
    """Wire the normalizer, remote clients and preview store from settings."""
    return BatchOrchestrator.from_settings(
        settings,
        http_client=http_client,
        preview_store=preview_store
    )


def get_orchestrator(request: Request) -> BatchOrchestrator:
    """Returns the session orchestrator from app state."""
    return request.app.state.orchestrator


def get_export_packager(request: Request) -> ExportPackager:
    return request.app.state.export_packager

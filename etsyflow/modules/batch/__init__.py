"""Batch and asset domain model."""

from etsyflow.modules.batch.models import (
    Asset,
    AssetState,
    Batch,
    ResolutionClass,
    ACTIVE_STATES,
    ALLOWED_TRANSITIONS,
)
from etsyflow.modules.batch.schemas import SuggestedMetadata

__all__ = [
    "Asset",
    "AssetState",
    "Batch",
    "ResolutionClass",
    "SuggestedMetadata",
    "ACTIVE_STATES",
    "ALLOWED_TRANSITIONS",
]

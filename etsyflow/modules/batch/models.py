"""
Asset and Batch Models with State Machine Tracking

Tracks each uploaded photo through:
    queued -> analyzing -> ready -> processing -> completed
with ``error`` reachable from analyzing/processing (or directly at ingestion).

Invariants kept by every mutation:
- result_handle is set iff state == completed
- last_error is set iff state == error
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from etsyflow.core.config import QualityTier
from etsyflow.core.exceptions import InvalidTransitionError
from etsyflow.core.logging import get_logger
from etsyflow.core.metrics import record_transition
from etsyflow.core.storage import PreviewHandle, PreviewStore
from etsyflow.modules.batch.schemas import SuggestedMetadata

logger = get_logger(__name__)


class AssetState(str, Enum):
    """Per-asset pipeline states."""
    QUEUED = "queued"             # Normalized, waiting for analysis
    ANALYZING = "analyzing"       # Vision analysis in flight
    READY = "ready"               # Analyzed, waiting for enhancement
    PROCESSING = "processing"     # Enhancement in flight
    COMPLETED = "completed"       # Enhanced result available
    ERROR = "error"               # Failed; needs an explicit retry


class ResolutionClass(str, Enum):
    SUFFICIENT = "sufficient"
    NEEDS_ENHANCEMENT = "needs_enhancement"


ALLOWED_TRANSITIONS = {
    AssetState.QUEUED: {AssetState.ANALYZING},
    AssetState.ANALYZING: {AssetState.READY, AssetState.ERROR},
    AssetState.READY: {AssetState.PROCESSING},
    AssetState.PROCESSING: {AssetState.COMPLETED, AssetState.ERROR},
    # explicit retry only
    AssetState.COMPLETED: {AssetState.PROCESSING},
    AssetState.ERROR: {AssetState.PROCESSING},
}

ACTIVE_STATES = frozenset({AssetState.ANALYZING, AssetState.PROCESSING})


@dataclass
class Asset:
    """One user-submitted photograph tracked through the pipeline."""

    filename: str
    media_type: str
    source_bytes: bytes
    state: AssetState
    width: Optional[int] = None
    height: Optional[int] = None
    original_width: Optional[int] = None
    original_height: Optional[int] = None
    resolution_class: Optional[ResolutionClass] = None
    source_base64: Optional[str] = None
    preview: Optional[PreviewHandle] = None
    converted_from: Optional[str] = None
    downsampled: bool = False

    user_prompt: Optional[str] = None
    suggested_metadata: Optional[SuggestedMetadata] = None

    result_handle: Optional[str] = None
    effective_prompt: Optional[str] = None
    output_width: Optional[int] = None
    output_height: Optional[int] = None

    last_error: Optional[str] = None
    error_code: Optional[str] = None

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    _preview_released: bool = field(default=False, repr=False)

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def _transition(self, to_state: AssetState):
        if to_state not in ALLOWED_TRANSITIONS.get(self.state, set()):
            raise InvalidTransitionError(
                f"Asset '{self.id}' cannot move from {self.state.value} to {to_state.value}",
                current_state=self.state.value,
                asset_id=self.id
            )
        from_state = self.state
        self.state = to_state
        self.updated_at = datetime.utcnow()
        record_transition(from_state.value, to_state.value)
        logger.info(
            "asset_transition",
            asset_id=self.id,
            from_state=from_state.value,
            to_state=to_state.value
        )

    def mark_analyzing(self):
        self._transition(AssetState.ANALYZING)
        self.last_error = None
        self.error_code = None

    def mark_ready(self, metadata: SuggestedMetadata):
        self._transition(AssetState.READY)
        self.suggested_metadata = metadata

    def mark_processing(self):
        """Enter processing from ready, or from completed/error on retry."""
        if self.source_base64 is None:
            raise InvalidTransitionError(
                f"Asset '{self.id}' has no normalized source and cannot be enhanced",
                current_state=self.state.value,
                asset_id=self.id
            )
        self._transition(AssetState.PROCESSING)
        self.last_error = None
        self.error_code = None
        self.result_handle = None
        self.output_width = None
        self.output_height = None

    def mark_completed(
        self,
        result_handle: str,
        effective_prompt: Optional[str] = None,
        output_size: Optional[tuple] = None
    ):
        if not result_handle:
            raise ValueError("result_handle is required to complete an asset")
        self._transition(AssetState.COMPLETED)
        self.result_handle = result_handle
        self.effective_prompt = effective_prompt
        if output_size:
            self.output_width, self.output_height = output_size

    def mark_failed(self, message: str, error_code: str = "ASSET_PROCESSING_FAILED"):
        self._transition(AssetState.ERROR)
        self.last_error = message or "Processing failed"
        self.error_code = error_code
        self.result_handle = None

    def set_user_prompt(self, prompt: Optional[str]):
        """Edit the per-item prompt; not allowed while enhancement is running."""
        if self.state == AssetState.PROCESSING:
            raise InvalidTransitionError(
                f"Asset '{self.id}' is being enhanced; its prompt can no longer change",
                current_state=self.state.value,
                asset_id=self.id
            )
        self.user_prompt = prompt.strip() if prompt and prompt.strip() else None
        self.updated_at = datetime.utcnow()

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    def release_preview(self, store: PreviewStore) -> bool:
        """Release the preview resource; only the first call reaches the store."""
        if self.preview is None or self._preview_released:
            return False
        self._preview_released = True
        return store.release(self.preview)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def check_invariants(self):
        """Raise ValueError if the result/error fields disagree with the state."""
        if (self.result_handle is not None) != (self.state == AssetState.COMPLETED):
            raise ValueError(f"asset {self.id}: result_handle set while {self.state.value}")
        if (self.last_error is not None) != (self.state == AssetState.ERROR):
            raise ValueError(f"asset {self.id}: last_error set while {self.state.value}")

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "id": self.id,
            "filename": self.filename,
            "media_type": self.media_type,
            "state": self.state.value,
            "width": self.width,
            "height": self.height,
            "original_width": self.original_width,
            "original_height": self.original_height,
            "resolution_class": self.resolution_class.value if self.resolution_class else None,
            "converted_from": self.converted_from,
            "downsampled": self.downsampled,
            "has_preview": self.preview is not None and not self._preview_released,
            "user_prompt": self.user_prompt,
            "suggested_metadata": (
                self.suggested_metadata.model_dump() if self.suggested_metadata else None
            ),
            "result_handle": self.result_handle,
            "effective_prompt": self.effective_prompt,
            "output_width": self.output_width,
            "output_height": self.output_height,
            "error": {
                "message": self.last_error,
                "code": self.error_code
            } if self.last_error else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class Batch:
    """
    Ordered collection of assets plus global enhancement configuration.

    Only the orchestrator mutates a Batch.
    """

    def __init__(
        self,
        target_mode: QualityTier = QualityTier.STANDARD,
        global_prompt: str = "",
        use_global_prompt: bool = False
    ):
        self._assets: "OrderedDict[str, Asset]" = OrderedDict()
        self.target_mode = target_mode
        self.global_prompt = global_prompt
        self.use_global_prompt = use_global_prompt

        # Set when a pass stopped on a credential failure
        self.halted_reason: Optional[str] = None
        self.credential_required: bool = False
        self.pass_running: bool = False

    def add(self, asset: Asset):
        if asset.id in self._assets:
            raise ValueError(f"Duplicate asset id '{asset.id}'")
        self._assets[asset.id] = asset

    def get(self, asset_id: str) -> Optional[Asset]:
        return self._assets.get(asset_id)

    def pop(self, asset_id: str) -> Optional[Asset]:
        return self._assets.pop(asset_id, None)

    def contains(self, asset: Asset) -> bool:
        """True if this exact asset object is still part of the batch."""
        return self._assets.get(asset.id) is asset

    def clear(self) -> List[Asset]:
        assets = list(self._assets.values())
        self._assets.clear()
        self.halted_reason = None
        self.credential_required = False
        return assets

    def __iter__(self) -> Iterator[Asset]:
        return iter(list(self._assets.values()))

    def __len__(self) -> int:
        return len(self._assets)

    def in_state(self, *states: AssetState) -> List[Asset]:
        return [a for a in self._assets.values() if a.state in states]

    @property
    def is_batch_active(self) -> bool:
        return any(a.is_active for a in self._assets.values())

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in AssetState}
        for asset in self._assets.values():
            counts[asset.state.value] += 1
        return counts

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "assets": [a.to_response_dict() for a in self._assets.values()],
            "counts": self.counts(),
            "is_batch_active": self.is_batch_active,
            "pass_running": self.pass_running,
            "target_mode": self.target_mode.value,
            "global_prompt": self.global_prompt,
            "use_global_prompt": self.use_global_prompt,
            "halted_reason": self.halted_reason,
            "credential_required": self.credential_required,
        }

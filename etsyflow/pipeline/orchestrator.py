"""
Batch Orchestrator

Owns the Batch and drives every asset through its state machine:

    ingest ──▶ queued ──▶ analyzing ──▶ ready ──▶ processing ──▶ completed
       │                      │                        │
       └──────────────────────┴────────▶ error ◀───────┘

Concurrency policy (single event loop):
- Normalization runs one file at a time in a worker thread
- Analysis calls for all queued assets are issued together; each asset is
  updated as soon as its own call settles
- Enhancement calls are strictly serial with a fixed delay between items

Failure isolation: every per-asset error is recorded on that asset. The one
exception is a credential failure during an enhancement pass, which halts the
rest of the pass until the credential is replaced and the pass restarted.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Dict, Iterable, List, Optional, Set, Tuple

import httpx

from etsyflow.core.config import QualityTier, Settings, TIER_TARGETS
from etsyflow.core.exceptions import (
    AssetNotFoundError,
    AssetProcessingFailed,
    CredentialFailure,
    EnhancementUnavailable,
    EtsyFlowError,
    InvalidTransitionError,
    NormalizationError,
)
from etsyflow.core.logging import LogContext, get_logger
from etsyflow.core.metrics import record_enhancement_pass, record_ingestion
from etsyflow.core.storage import PreviewStore, PreviewStoreFactory
from etsyflow.modules.batch.models import Asset, AssetState, Batch
from etsyflow.pipeline.classifier import classify
from etsyflow.pipeline.clients import AnalysisClient, EnhancementClient, EnhancementOptions
from etsyflow.pipeline.normalizer import AssetNormalizer, NormalizedAsset, RawFile
from etsyflow.pipeline.prompts import resolve_effective_prompt

logger = get_logger(__name__)


@dataclass
class PassResult:
    """Outcome of one batch-wide enhancement pass."""

    started: bool
    candidates: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    not_attempted: List[str] = field(default_factory=list)
    halted: bool = False
    reason: Optional[str] = None

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "candidates": list(self.candidates),
            "reason": self.reason,
        }


def target_output_size(width: int, height: int, tier: QualityTier) -> Tuple[int, int]:
    """Scale so the long edge matches the tier target."""
    edge, _ = TIER_TARGETS[tier]
    scale = edge / max(width, height, 1)
    return max(1, round(width * scale)), max(1, round(height * scale))


class BatchOrchestrator:
    """Single mutator of the session Batch."""

    def __init__(
        self,
        normalizer: AssetNormalizer,
        analysis_client: AnalysisClient,
        enhancement_client: EnhancementClient,
        preview_store: PreviewStore,
        batch: Optional[Batch] = None,
        inter_item_delay: float = 1.0,
        min_publish_dimension: int = 2000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_credential_failure: Optional[Callable[[CredentialFailure], None]] = None
    ):
        self.normalizer = normalizer
        self.analysis_client = analysis_client
        self.enhancement_client = enhancement_client
        self.preview_store = preview_store
        self.batch = batch or Batch()
        self.inter_item_delay = inter_item_delay
        self.min_publish_dimension = min_publish_dimension
        self.on_credential_failure = on_credential_failure
        self._sleep = sleep

        # One enhancement call in flight at a time, passes and retries alike
        self._enhancement_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        preview_store: Optional[PreviewStore] = None,
        **kwargs
    ) -> "BatchOrchestrator":
        store = preview_store or PreviewStoreFactory.get_store(settings)
        return cls(
            normalizer=AssetNormalizer.from_settings(settings, store),
            analysis_client=AnalysisClient.from_settings(settings, http_client=http_client),
            enhancement_client=EnhancementClient.from_settings(settings, http_client=http_client),
            preview_store=store,
            batch=Batch(target_mode=settings.DEFAULT_QUALITY_TIER),
            inter_item_delay=settings.ENHANCEMENT_INTER_ITEM_DELAY_SECONDS,
            min_publish_dimension=settings.MIN_PUBLISH_DIMENSION,
            **kwargs
        )

    # =========================================================================
    # Ingestion
    # =========================================================================

    async def ingest(self, raw_files: Iterable[RawFile]) -> List[Asset]:
        """
        Normalize and classify uploaded files, adding them to the batch in
        submission order. Files that fail normalization are added directly
        in the error state with their original bytes.
        """
        created = []
        for raw in raw_files:
            try:
                normalized = await asyncio.to_thread(self.normalizer.normalize, raw)
            except NormalizationError as exc:
                asset = self._failed_asset(raw, exc.message, exc.error_code)
                record_ingestion(exc.error_code.lower())
            except Exception as exc:
                logger.error(
                    "normalization_unexpected_error",
                    filename=raw.filename,
                    error=str(exc),
                    error_type=type(exc).__name__
                )
                asset = self._failed_asset(raw, f"Could not process '{raw.filename}': {exc}", "DECODE_FAILURE")
                record_ingestion("decode_failure")
            else:
                asset = self._queued_asset(normalized)
                record_ingestion("normalized")

            self.batch.add(asset)
            created.append(asset)

        logger.info(
            "files_ingested",
            received=len(created),
            queued=sum(1 for a in created if a.state == AssetState.QUEUED),
            failed=sum(1 for a in created if a.state == AssetState.ERROR)
        )
        return created

    def _queued_asset(self, normalized: NormalizedAsset) -> Asset:
        return Asset(
            filename=normalized.filename,
            media_type=normalized.media_type,
            source_bytes=normalized.data,
            state=AssetState.QUEUED,
            width=normalized.width,
            height=normalized.height,
            original_width=normalized.original_width,
            original_height=normalized.original_height,
            resolution_class=classify(normalized.width, normalized.height, self.min_publish_dimension),
            source_base64=normalized.base64,
            preview=normalized.preview,
            converted_from=normalized.converted_from,
            downsampled=normalized.downsampled,
        )

    @staticmethod
    def _failed_asset(raw: RawFile, message: str, error_code: str) -> Asset:
        logger.warning("normalization_failed", filename=raw.filename, error=message, error_code=error_code)
        return Asset(
            filename=raw.filename,
            media_type=raw.media_type,
            source_bytes=raw.data,
            state=AssetState.ERROR,
            last_error=message,
            error_code=error_code,
        )

    # =========================================================================
    # Analysis phase
    # =========================================================================

    async def run_analysis(self) -> List[Asset]:
        """Analyze every queued asset concurrently; returns the assets attempted."""
        pending = self.batch.in_state(AssetState.QUEUED)
        if not pending:
            return []

        logger.info("analysis_phase_started", assets=len(pending))
        await asyncio.gather(*(self._analyze(asset) for asset in pending))
        logger.info("analysis_phase_completed", counts=self.batch.counts())
        return pending

    def analyze_in_background(self) -> Optional[asyncio.Task]:
        if not self.batch.in_state(AssetState.QUEUED):
            return None
        return self._spawn(self.run_analysis())

    async def _analyze(self, asset: Asset):
        with LogContext(asset_id=asset.id, stage="analysis"):
            if not self.batch.contains(asset) or asset.state != AssetState.QUEUED:
                return
            asset.mark_analyzing()

            try:
                metadata = await self.analysis_client.analyze(asset)
            except EtsyFlowError as exc:
                self._record_failure(asset, exc.message, exc.error_code)
                return
            except Exception as exc:
                logger.error("analysis_unexpected_error", error=str(exc), error_type=type(exc).__name__)
                self._record_failure(asset, f"Analysis failed: {exc}", AssetProcessingFailed.error_code)
                return

            if self._discarded(asset):
                return
            asset.mark_ready(metadata)

    # =========================================================================
    # Enhancement phase
    # =========================================================================

    def _claim_pass(self) -> PassResult:
        if self.batch.pass_running:
            record_enhancement_pass("rejected")
            return PassResult(started=False, reason="An enhancement pass is already running")

        candidates = [a.id for a in self.batch.in_state(AssetState.READY)]
        if not candidates:
            record_enhancement_pass("rejected")
            logger.info("enhancement_pass_rejected", reason="no_eligible_assets")
            return PassResult(started=False, reason="No assets are ready for enhancement")

        self.batch.pass_running = True
        self.batch.halted_reason = None
        self.batch.credential_required = False
        logger.info("enhancement_pass_started", candidates=len(candidates))
        return PassResult(started=True, candidates=candidates)

    async def start_enhancement_pass(self) -> PassResult:
        """
        Enhance every ready asset, one at a time in batch order.

        Rejected as a no-op when nothing is ready or a pass is already running.
        """
        plan = self._claim_pass()
        if not plan.started:
            return plan
        return await self._run_pass(plan)

    def start_enhancement_pass_in_background(self) -> PassResult:
        plan = self._claim_pass()
        if plan.started:
            self._spawn(self._run_pass(plan))
        return plan

    async def _run_pass(self, plan: PassResult) -> PassResult:
        attempted = 0
        try:
            for position, asset_id in enumerate(plan.candidates):
                asset = self.batch.get(asset_id)
                if asset is None or asset.state != AssetState.READY:
                    plan.skipped.append(asset_id)
                    continue

                if attempted and self.inter_item_delay > 0:
                    await self._sleep(self.inter_item_delay)
                attempted += 1

                try:
                    async with self._enhancement_lock:
                        if asset.state != AssetState.READY or not self.batch.contains(asset):
                            plan.skipped.append(asset_id)
                            continue
                        asset.mark_processing()
                        succeeded = await self._enhance(asset)
                except CredentialFailure as exc:
                    plan.failed.append(asset_id)
                    plan.halted = True
                    plan.reason = exc.message
                    plan.not_attempted = [
                        remaining for remaining in plan.candidates[position + 1:]
                        if self.batch.get(remaining) is not None
                    ]
                    logger.warning(
                        "enhancement_pass_halted",
                        asset_id=asset_id,
                        not_attempted=len(plan.not_attempted),
                        error_code=exc.error_code
                    )
                    record_enhancement_pass("halted")
                    self._credential_required(exc)
                    return plan

                (plan.completed if succeeded else plan.failed).append(asset_id)
        finally:
            self.batch.pass_running = False

        record_enhancement_pass("completed")
        logger.info(
            "enhancement_pass_completed",
            completed=len(plan.completed),
            failed=len(plan.failed),
            skipped=len(plan.skipped)
        )
        return plan

    async def _enhance(self, asset: Asset) -> bool:
        """
        One enhancement call for an asset already in processing.

        Returns True if the asset completed. Re-raises CredentialFailure after
        recording it so a pass can halt.
        """
        with LogContext(asset_id=asset.id, stage="enhancement"):
            prompt = resolve_effective_prompt(
                self.batch.global_prompt,
                self.batch.use_global_prompt,
                asset.user_prompt
            )
            tier = self.batch.target_mode
            options = EnhancementOptions.for_asset(asset, tier, prompt)

            try:
                result = await self.enhancement_client.enhance(asset, options)
            except CredentialFailure as exc:
                self._record_failure(asset, exc.message, exc.error_code)
                raise
            except EtsyFlowError as exc:
                self._record_failure(asset, exc.message, exc.error_code)
                return False
            except Exception as exc:
                logger.error("enhancement_unexpected_error", error=str(exc), error_type=type(exc).__name__)
                self._record_failure(asset, f"Enhancement failed: {exc}", AssetProcessingFailed.error_code)
                return False

            if self._discarded(asset):
                return False

            if result.fallback_used:
                unavailable = EnhancementUnavailable(
                    f"Used original image: enhancement unavailable ({result.fallback_reason})",
                    "enhancement",
                    asset_id=asset.id
                )
                self._record_failure(asset, unavailable.message, unavailable.error_code)
                return False

            asset.mark_completed(
                result.reference,
                effective_prompt=prompt,
                output_size=result.output_size or target_output_size(asset.width, asset.height, tier)
            )
            return True

    # =========================================================================
    # Per-item actions
    # =========================================================================

    def _require(self, asset_id: str) -> Asset:
        asset = self.batch.get(asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)
        return asset

    def _begin_retry(self, asset_id: str) -> Asset:
        asset = self._require(asset_id)
        if asset.state not in (AssetState.COMPLETED, AssetState.ERROR):
            raise InvalidTransitionError(
                f"Only completed or failed assets can be retried (asset is {asset.state.value})",
                current_state=asset.state.value,
                asset_id=asset.id
            )
        asset.mark_processing()
        return asset

    async def _enhance_single(self, asset: Asset) -> Asset:
        async with self._enhancement_lock:
            try:
                await self._enhance(asset)
            except CredentialFailure as exc:
                self._credential_required(exc)
        return asset

    async def retry(self, asset_id: str) -> Asset:
        """Re-submit a completed or failed asset straight to processing."""
        asset = self._begin_retry(asset_id)
        return await self._enhance_single(asset)

    def retry_in_background(self, asset_id: str) -> Asset:
        asset = self._begin_retry(asset_id)
        self._spawn(self._enhance_single(asset))
        return asset

    def _begin_refine(self, asset_id: str, prompt: Optional[str]) -> Asset:
        asset = self._require(asset_id)
        if asset.state == AssetState.READY:
            asset.set_user_prompt(prompt)
            asset.mark_processing()
            return asset
        if asset.state in (AssetState.COMPLETED, AssetState.ERROR):
            asset.set_user_prompt(prompt)
            return self._begin_retry(asset_id)
        raise InvalidTransitionError(
            f"Asset cannot be refined while {asset.state.value}",
            current_state=asset.state.value,
            asset_id=asset.id
        )

    async def refine(self, asset_id: str, prompt: Optional[str]) -> Asset:
        """Set the item prompt and enhance just this asset."""
        asset = self._begin_refine(asset_id, prompt)
        return await self._enhance_single(asset)

    def refine_in_background(self, asset_id: str, prompt: Optional[str]) -> Asset:
        asset = self._begin_refine(asset_id, prompt)
        self._spawn(self._enhance_single(asset))
        return asset

    def set_user_prompt(self, asset_id: str, prompt: Optional[str]) -> Asset:
        asset = self._require(asset_id)
        asset.set_user_prompt(prompt)
        return asset

    def update_settings(
        self,
        global_prompt: Optional[str] = None,
        use_global_prompt: Optional[bool] = None,
        target_mode: Optional[QualityTier] = None
    ) -> Batch:
        if global_prompt is not None:
            self.batch.global_prompt = global_prompt.strip()
        if use_global_prompt is not None:
            self.batch.use_global_prompt = use_global_prompt
        if target_mode is not None:
            self.batch.target_mode = QualityTier(target_mode)
        logger.info(
            "batch_settings_updated",
            target_mode=self.batch.target_mode.value,
            use_global_prompt=self.batch.use_global_prompt,
            has_global_prompt=bool(self.batch.global_prompt)
        )
        return self.batch

    def remove_asset(self, asset_id: str) -> Asset:
        """Drop an asset from the batch and release its preview."""
        asset = self.batch.pop(asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)
        asset.release_preview(self.preview_store)
        logger.info("asset_removed", asset_id=asset_id, state=asset.state.value)
        return asset

    def reset(self) -> int:
        """Discard the whole batch, releasing every preview. Returns the asset count."""
        assets = self.batch.clear()
        for asset in assets:
            asset.release_preview(self.preview_store)
        logger.info("batch_reset", assets=len(assets))
        return len(assets)

    def read_preview(self, asset_id: str) -> Tuple[bytes, str]:
        asset = self._require(asset_id)
        if asset.preview is None:
            raise AssetNotFoundError(asset_id, details={"reason": "asset has no preview"})
        try:
            return self.preview_store.read(asset.preview), asset.preview.content_type
        except KeyError:
            raise AssetNotFoundError(asset_id, details={"reason": "preview released"}) from None

    # =========================================================================
    # Credentials and state
    # =========================================================================

    def set_enhancement_api_key(self, api_key: str):
        """Install a new credential. A halted pass must still be restarted explicitly."""
        self.enhancement_client.set_api_key(api_key)
        self.batch.halted_reason = None
        self.batch.credential_required = False
        logger.info("enhancement_credential_updated")

    def _credential_required(self, exc: CredentialFailure):
        self.batch.halted_reason = exc.message
        self.batch.credential_required = True
        if self.on_credential_failure is not None:
            self.on_credential_failure(exc)

    @property
    def is_batch_active(self) -> bool:
        return self.batch.is_batch_active

    def snapshot(self) -> Dict[str, Any]:
        return self.batch.to_response_dict()

    def completed_assets(self) -> List[Asset]:
        return self.batch.in_state(AssetState.COMPLETED)

    # =========================================================================
    # Internals
    # =========================================================================

    def _discarded(self, asset: Asset) -> bool:
        """True when the asset was removed (or the batch reset) mid-call."""
        if self.batch.contains(asset):
            return False
        logger.info("late_result_dropped", asset_id=asset.id)
        return True

    def _record_failure(self, asset: Asset, message: str, error_code: str):
        if self._discarded(asset):
            return
        asset.mark_failed(message, error_code)
        logger.warning("asset_failed", asset_id=asset.id, error=message, error_code=error_code)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.error("background_task_failed", error=str(exc), error_type=type(exc).__name__)

    async def wait_idle(self):
        """Wait until no background analysis or enhancement work is left."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    async def aclose(self):
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.wait(list(self._tasks))

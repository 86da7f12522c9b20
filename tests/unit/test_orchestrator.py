import asyncio

import httpx
import pytest

from etsyflow.core.exceptions import KEY_REQUIRED, AssetNotFoundError, InvalidTransitionError
from etsyflow.modules.batch.models import AssetState, ResolutionClass
from etsyflow.pipeline.normalizer import RawFile
from etsyflow.pipeline.orchestrator import BatchOrchestrator
from tests.helpers import METADATA, make_raw_file


def ok():
    return httpx.Response(200, json={"image": {"url": "https://cdn.test/out.png"}})


async def ready_batch(orchestrator, count):
    await orchestrator.ingest([
        make_raw_file(f"item-{i}.jpg", color=(i * 40, 80, 120)) for i in range(count)
    ])
    await orchestrator.run_analysis()
    return list(orchestrator.batch)


def assert_invariants(orchestrator):
    for asset in orchestrator.batch:
        asset.check_invariants()


# =============================================================================
# Ingestion
# =============================================================================

@pytest.mark.asyncio
async def test_ingest_keeps_order_and_records_failures(orchestrator, preview_store):
    oversized = RawFile("huge.jpg", "image/jpeg", b"\x00" * (10 * 1024 * 1024 + 1))
    files = [make_raw_file("small.jpg"), oversized, make_raw_file("large.jpg", 2100, 2100)]

    assets = await orchestrator.ingest(files)

    assert [a.filename for a in orchestrator.batch] == ["small.jpg", "huge.jpg", "large.jpg"]
    small, huge, large = assets
    assert small.state == AssetState.QUEUED
    assert small.resolution_class == ResolutionClass.NEEDS_ENHANCEMENT
    assert large.resolution_class == ResolutionClass.SUFFICIENT
    assert max(large.width, large.height) <= 2048

    assert huge.state == AssetState.ERROR
    assert huge.error_code == "SIZE_LIMIT_EXCEEDED"
    assert huge.source_bytes == oversized.data
    assert huge.preview is None
    assert len(preview_store.created) == 2
    assert_invariants(orchestrator)


# =============================================================================
# Analysis phase
# =============================================================================

@pytest.mark.asyncio
async def test_one_analysis_failure_is_isolated(orchestrator, fake_service):
    await orchestrator.ingest([make_raw_file(f"item-{i}.jpg", color=(i * 40, 10, 10)) for i in range(4)])
    failing = list(orchestrator.batch)[2]

    def analysis(payload, n):
        if payload["image"] == failing.source_base64:
            return httpx.Response(400, text="could not read image")
        return httpx.Response(200, json={
            "title": "Stoneware Mug", "tags": ["mug"], "category": "Home", "visualDescription": "glazed"
        })

    fake_service.analysis_handler = analysis
    await orchestrator.run_analysis()

    counts = orchestrator.batch.counts()
    assert counts["ready"] == 3
    assert counts["error"] == 1
    assert failing.state == AssetState.ERROR
    assert failing.last_error
    assert_invariants(orchestrator)

    # never retried automatically
    assert await orchestrator.run_analysis() == []
    assert len(fake_service.analysis_calls) == 4
    assert not orchestrator.is_batch_active


@pytest.mark.asyncio
async def test_analysis_stores_metadata(orchestrator):
    asset, = await ready_batch(orchestrator, 1)

    assert asset.state == AssetState.READY
    assert asset.suggested_metadata.category == "Home & Living"


@pytest.mark.asyncio
async def test_analysis_requests_overlap(test_settings, preview_store):
    in_flight = 0
    peak = 0

    async def slow_analysis(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.05)
        in_flight -= 1
        return httpx.Response(200, json=METADATA)

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow_analysis)) as client:
        orchestrator = BatchOrchestrator.from_settings(test_settings, http_client=client, preview_store=preview_store)
        assets = await ready_batch(orchestrator, 4)
        await orchestrator.aclose()

    assert peak == 4
    assert all(a.state == AssetState.READY for a in assets)


# =============================================================================
# Enhancement phase
# =============================================================================

@pytest.mark.asyncio
async def test_pass_rejected_when_nothing_eligible(orchestrator, fake_service):
    result = await orchestrator.start_enhancement_pass()

    assert not result.started
    assert result.candidates == []
    assert fake_service.enhancement_calls == []


@pytest.mark.asyncio
async def test_transient_failures_then_completion(orchestrator, fake_service):
    asset, = await ready_batch(orchestrator, 1)
    fake_service.enhancement_handler = lambda payload, n: httpx.Response(503) if n < 3 else ok()

    result = await orchestrator.start_enhancement_pass()

    assert result.completed == [asset.id]
    assert asset.state == AssetState.COMPLETED
    assert asset.result_handle == "https://cdn.test/out.png"
    assert (asset.output_width, asset.output_height) == (2048, 1536)
    assert len(fake_service.enhancement_calls) == 3
    assert_invariants(orchestrator)


@pytest.mark.asyncio
async def test_credential_failure_halts_rest_of_pass(orchestrator, fake_service):
    assets = await ready_batch(orchestrator, 5)
    fake_service.enhancement_handler = lambda payload, n: httpx.Response(401) if n == 2 else ok()

    result = await orchestrator.start_enhancement_pass()

    assert result.halted
    assert assets[0].state == AssetState.COMPLETED
    assert assets[1].state == AssetState.ERROR
    assert assets[1].error_code == KEY_REQUIRED
    assert [a.state for a in assets[2:]] == [AssetState.READY] * 3
    assert result.not_attempted == [a.id for a in assets[2:]]
    assert len(fake_service.enhancement_calls) == 2
    assert orchestrator.batch.credential_required
    assert_invariants(orchestrator)

    # restart after a new key: the failed item needs an explicit retry
    orchestrator.set_enhancement_api_key("replacement-key")
    fake_service.enhancement_handler = lambda payload, n: ok()
    restarted = await orchestrator.start_enhancement_pass()

    assert restarted.candidates == [a.id for a in assets[2:]]
    assert [a.state for a in assets[2:]] == [AssetState.COMPLETED] * 3
    assert assets[1].state == AssetState.ERROR
    assert not orchestrator.batch.credential_required


@pytest.mark.asyncio
async def test_credential_callback_invoked(orchestrator, fake_service):
    seen = []
    orchestrator.on_credential_failure = seen.append
    await ready_batch(orchestrator, 2)
    fake_service.enhancement_handler = lambda payload, n: httpx.Response(403)

    await orchestrator.start_enhancement_pass()

    assert len(seen) == 1
    assert seen[0].error_code == KEY_REQUIRED


@pytest.mark.asyncio
async def test_pass_is_serial_in_submission_order_with_delay(
    test_settings, http_client, preview_store, fake_service
):
    delays = []

    async def record_sleep(seconds):
        delays.append(seconds)

    orchestrator = BatchOrchestrator.from_settings(
        test_settings.model_copy(update={"ENHANCEMENT_INTER_ITEM_DELAY_SECONDS": 1.5}),
        http_client=http_client,
        preview_store=preview_store,
        sleep=record_sleep,
    )
    assets = await ready_batch(orchestrator, 3)

    await orchestrator.start_enhancement_pass()

    assert [c["image"] for c in fake_service.enhancement_calls] == [a.source_base64 for a in assets]
    # no delay after the last item
    assert delays == [1.5, 1.5]


@pytest.mark.asyncio
async def test_fallback_recorded_as_error(test_settings, http_client, preview_store, fake_service):
    orchestrator = BatchOrchestrator.from_settings(
        test_settings.model_copy(update={"ENHANCEMENT_FALLBACK_TO_ORIGINAL": True}),
        http_client=http_client,
        preview_store=preview_store,
    )
    asset, = await ready_batch(orchestrator, 1)
    fake_service.enhancement_handler = lambda payload, n: httpx.Response(500, text="boom")

    await orchestrator.start_enhancement_pass()

    assert asset.state == AssetState.ERROR
    assert asset.error_code == "ENHANCEMENT_UNAVAILABLE"
    assert asset.last_error.startswith("Used original image: enhancement unavailable")
    assert asset.result_handle is None


@pytest.mark.asyncio
async def test_safety_rejection_kept_when_fallback_enabled(test_settings, http_client, preview_store, fake_service):
    orchestrator = BatchOrchestrator.from_settings(
        test_settings.model_copy(update={"ENHANCEMENT_FALLBACK_TO_ORIGINAL": True}),
        http_client=http_client,
        preview_store=preview_store,
    )
    asset, = await ready_batch(orchestrator, 1)
    fake_service.enhancement_handler = lambda payload, n: httpx.Response(200, json={"blocked": True})

    await orchestrator.start_enhancement_pass()

    assert asset.state == AssetState.ERROR
    assert asset.error_code == "SAFETY_REJECTION"
    assert len(fake_service.enhancement_calls) == 1


@pytest.mark.asyncio
async def test_prompt_precedence(orchestrator, fake_service):
    first, second = await ready_batch(orchestrator, 2)
    orchestrator.update_settings(global_prompt="white marble", use_global_prompt=False)
    orchestrator.set_user_prompt(first.id, "rustic linen")

    await orchestrator.start_enhancement_pass()

    assert [c["user_refinement"] for c in fake_service.enhancement_calls] == ["rustic linen", "white marble"]
    assert first.effective_prompt == "rustic linen"

    orchestrator.update_settings(use_global_prompt=True)
    await orchestrator.retry(first.id)

    assert fake_service.enhancement_calls[-1]["user_refinement"] == "white marble"
    assert first.effective_prompt == "white marble"


# =============================================================================
# Per-item actions
# =============================================================================

@pytest.mark.asyncio
async def test_retry_from_error(orchestrator, fake_service):
    asset, = await ready_batch(orchestrator, 1)
    fake_service.enhancement_handler = lambda payload, n: httpx.Response(422, text="bad input") if n == 1 else ok()
    await orchestrator.start_enhancement_pass()
    assert asset.state == AssetState.ERROR

    await orchestrator.retry(asset.id)

    assert asset.state == AssetState.COMPLETED
    assert asset.last_error is None
    assert_invariants(orchestrator)


@pytest.mark.asyncio
async def test_retry_rules(orchestrator):
    ready, = await ready_batch(orchestrator, 1)
    broken, = await orchestrator.ingest([RawFile("bad.jpg", "image/jpeg", b"nope")])

    with pytest.raises(InvalidTransitionError):
        await orchestrator.retry(ready.id)
    with pytest.raises(InvalidTransitionError):
        await orchestrator.retry(broken.id)
    with pytest.raises(AssetNotFoundError):
        await orchestrator.retry("missing")


@pytest.mark.asyncio
async def test_refine_single_asset(orchestrator, fake_service):
    first, second = await ready_batch(orchestrator, 2)

    await orchestrator.refine(first.id, "on slate")

    assert first.state == AssetState.COMPLETED
    assert first.effective_prompt == "on slate"
    assert second.state == AssetState.READY
    assert len(fake_service.enhancement_calls) == 1


@pytest.mark.asyncio
async def test_background_pass_and_wait_idle(orchestrator):
    assets = await ready_batch(orchestrator, 2)

    plan = orchestrator.start_enhancement_pass_in_background()
    again = orchestrator.start_enhancement_pass_in_background()
    await orchestrator.wait_idle()

    assert plan.started
    assert not again.started
    assert all(a.state == AssetState.COMPLETED for a in assets)
    assert not orchestrator.batch.pass_running


# =============================================================================
# Preview resources
# =============================================================================

@pytest.mark.asyncio
async def test_remove_releases_preview_exactly_once(orchestrator, preview_store):
    asset, other = await ready_batch(orchestrator, 2)

    orchestrator.remove_asset(asset.id)
    with pytest.raises(AssetNotFoundError):
        orchestrator.remove_asset(asset.id)
    orchestrator.reset()

    assert preview_store.release_calls[asset.preview.key] == 1
    assert preview_store.release_calls[other.preview.key] == 1
    assert preview_store.active_count() == 0
    assert len(orchestrator.batch) == 0


@pytest.mark.asyncio
async def test_result_dropped_when_asset_removed_mid_call(orchestrator, fake_service, preview_store):
    asset, = await ready_batch(orchestrator, 1)

    def remove_during_call(payload, n):
        orchestrator.remove_asset(asset.id)
        return ok()

    fake_service.enhancement_handler = remove_during_call
    await orchestrator.start_enhancement_pass()

    assert asset.result_handle is None
    assert orchestrator.batch.get(asset.id) is None
    assert preview_store.release_calls[asset.preview.key] == 1

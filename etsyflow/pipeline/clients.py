"""
Remote AI Service Clients

Two clients composed the same way over httpx:
- AnalysisClient: vision analysis -> SuggestedMetadata
- EnhancementClient: regeneration/upscale -> EnhancementResult

Shared behavior:
- Every call bounded by a timeout (timeouts count as transient failures)
- Transient failures (429/502/503/504, timeouts, connection errors) retried
  with exponential backoff up to a fixed attempt count
- Everything else (credential, safety, invalid input, malformed response)
  propagates immediately
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError

from etsyflow.core.config import QualityTier, Settings, TIER_TARGETS
from etsyflow.core.exceptions import (
    AssetProcessingFailed,
    CredentialFailure,
    InvalidServiceRequest,
    MalformedResponse,
    SafetyRejection,
    ServiceError,
    TransientServiceFailure,
)
from etsyflow.core.logging import get_logger
from etsyflow.core.metrics import record_remote_call, record_remote_retry, track_stage_latency
from etsyflow.modules.batch.models import Asset
from etsyflow.modules.batch.schemas import SuggestedMetadata
from etsyflow.pipeline.prompts import (
    ANALYSIS_INSTRUCTION,
    SUBJECT_PRESERVATION_INSTRUCTION,
    AspectRatio,
    build_enhancement_prompt,
    map_aspect_ratio,
)

logger = get_logger(__name__)

TRANSIENT_STATUSES = {429, 502, 503, 504}
CREDENTIAL_STATUSES = {401, 403}
CREDENTIAL_MARKERS = ("api_key_invalid", "entity was not found", "api key not valid")
SAFETY_MARKERS = ("safety", "prohibited_content", "content policy", "blocked")


# =============================================================================
# Retry Policy
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given failed attempt (1-based): base, 2*base, 4*base..."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.REMOTE_MAX_ATTEMPTS,
            base_delay=settings.REMOTE_BACKOFF_BASE_SECONDS,
            max_delay=settings.REMOTE_BACKOFF_MAX_SECONDS,
        )


# =============================================================================
# Error Classification
# =============================================================================

def classify_http_error(service: str, response: httpx.Response) -> ServiceError:
    """Map a non-2xx response onto the error taxonomy."""
    status = response.status_code
    text = response.text[:500]
    lowered = text.lower()

    if status in CREDENTIAL_STATUSES or any(m in lowered for m in CREDENTIAL_MARKERS):
        return CredentialFailure(
            "Please select a valid paid API key and try again.",
            service,
            http_status=status
        )
    if status in TRANSIENT_STATUSES:
        return TransientServiceFailure(
            f"{service} service temporarily unavailable (HTTP {status})",
            service,
            http_status=status
        )
    if any(m in lowered for m in SAFETY_MARKERS):
        return SafetyRejection(
            "The AI service declined this image for safety reasons.",
            service,
            http_status=status
        )
    if 400 <= status < 500:
        return InvalidServiceRequest(
            f"{service} service rejected the request (HTTP {status}): {text}",
            service,
            http_status=status
        )
    return AssetProcessingFailed(
        f"{service} service error (HTTP {status}): {text}",
        service,
        http_status=status
    )


def _check_body_for_rejection(service: str, body: Any):
    """Some services answer 200 with a refusal instead of a result."""
    if not isinstance(body, dict):
        return
    feedback = body.get("prompt_feedback") or body.get("promptFeedback") or {}
    candidates = body.get("candidates") or []
    finish = candidates[0].get("finish_reason") or candidates[0].get("finishReason") if (
        candidates and isinstance(candidates[0], dict)
    ) else None
    if (
        body.get("blocked") is True
        or (isinstance(feedback, dict) and (feedback.get("block_reason") or feedback.get("blockReason")))
        or finish in ("SAFETY", "PROHIBITED_CONTENT")
    ):
        raise SafetyRejection("The AI service declined this image for safety reasons.", service)


# =============================================================================
# Base Client
# =============================================================================

class RemoteServiceClient:
    """Single opaque call to an external AI endpoint with timeout and retries."""

    service_name = "remote"

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._http_client = http_client
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @asynccontextmanager
    async def _session(self):
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def _post_json(self, payload: Dict[str, Any]) -> Any:
        """One attempt. Raises a classified ServiceError on failure."""
        service = self.service_name

        async def send() -> httpx.Response:
            async with self._session() as client:
                return await client.post(
                    self.url,
                    json=payload,
                    headers=self._headers(),
                    timeout=self.timeout
                )

        # httpx timeouts are per phase; bound the whole attempt as well
        try:
            response = await asyncio.wait_for(send(), self.timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise TransientServiceFailure(f"{service} service timed out", service) from exc
        except httpx.TransportError as exc:
            raise TransientServiceFailure(f"{service} service unreachable: {exc}", service) from exc

        if response.status_code >= 400:
            raise classify_http_error(service, response)

        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponse(
                f"{service} service returned a non-JSON response",
                service,
                http_status=response.status_code
            ) from exc

        _check_body_for_rejection(service, body)
        return body

    async def _call_with_retry(self, payload: Dict[str, Any]) -> Tuple[Any, int]:
        """Run the call under the retry policy. Returns (body, attempts)."""
        service = self.service_name
        attempt = 0
        while True:
            attempt += 1
            try:
                with track_stage_latency(service):
                    body = await self._post_json(payload)
                record_remote_call(service, "success")
                return body, attempt
            except ServiceError as exc:
                record_remote_call(service, exc.error_code.lower())
                if not exc.retryable:
                    raise
                if attempt >= self.retry_policy.max_attempts:
                    logger.error(
                        "remote_call_exhausted",
                        service=service,
                        attempts=attempt,
                        error=exc.message
                    )
                    raise AssetProcessingFailed(
                        f"{service} service failed after {attempt} attempts: {exc.message}",
                        service,
                        http_status=exc.http_status
                    ) from exc

                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    "remote_call_retry",
                    service=service,
                    attempt=attempt,
                    max_attempts=self.retry_policy.max_attempts,
                    delay_seconds=delay,
                    error=exc.message
                )
                record_remote_retry(service)
                await self._sleep(delay)


# =============================================================================
# Analysis Client
# =============================================================================

def parse_analysis_response(body: Any) -> SuggestedMetadata:
    """Accept the metadata at top level, under data/result, or as JSON text."""
    candidate = body
    if isinstance(candidate, dict):
        for key in ("data", "result"):
            if isinstance(candidate.get(key), (dict, str)):
                candidate = candidate[key]
                break
    if isinstance(candidate, dict) and isinstance(candidate.get("text"), str):
        candidate = candidate["text"]
    if isinstance(candidate, str):
        try:
            candidate = json.loads(candidate)
        except ValueError as exc:
            raise MalformedResponse("Vision AI returned unparseable metadata", "analysis") from exc

    try:
        return SuggestedMetadata.model_validate(candidate)
    except ValidationError as exc:
        raise MalformedResponse(
            f"Vision AI returned incomplete metadata: {exc.error_count()} invalid field(s)",
            "analysis",
            details={"fields": [".".join(str(p) for p in err["loc"]) for err in exc.errors()]}
        ) from exc


class AnalysisClient(RemoteServiceClient):
    """Derives listing metadata from a product photo."""

    service_name = "analysis"

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "AnalysisClient":
        return cls(
            settings.ANALYSIS_API_URL,
            api_key=settings.ANALYSIS_API_KEY,
            timeout=settings.REMOTE_TIMEOUT_SECONDS,
            retry_policy=RetryPolicy.from_settings(settings),
            **kwargs
        )

    def build_request(self, asset: Asset) -> Dict[str, Any]:
        return {
            "image": asset.source_base64,
            "mime_type": asset.media_type,
            "instruction": ANALYSIS_INSTRUCTION,
            "response_format": "json",
        }

    async def analyze(self, asset: Asset) -> SuggestedMetadata:
        body, _ = await self._call_with_retry(self.build_request(asset))
        return parse_analysis_response(body)


# =============================================================================
# Enhancement Client
# =============================================================================

@dataclass(frozen=True)
class EnhancementOptions:
    quality_tier: QualityTier
    target_aspect_ratio: AspectRatio
    refinement: Optional[str] = None

    @property
    def preserve_subject_identity(self) -> bool:
        return True

    @classmethod
    def for_asset(
        cls,
        asset: Asset,
        quality_tier: QualityTier,
        refinement: Optional[str] = None
    ) -> "EnhancementOptions":
        return cls(
            quality_tier=quality_tier,
            target_aspect_ratio=map_aspect_ratio(asset.width or 0, asset.height or 0),
            refinement=refinement,
        )


@dataclass(frozen=True)
class EnhancementResult:
    reference: str
    quality_tier: QualityTier
    aspect_ratio: AspectRatio
    attempts: int = 1
    output_size: Optional[Tuple[int, int]] = None
    fallback_used: bool = False
    fallback_reason: Optional[str] = None


# Where a successful response may carry the result, in priority order
RESULT_PATHS = (
    ("data", "image", "url"),
    ("image", "url"),
    ("data", "images", 0, "url"),
    ("images", 0, "url"),
    ("data", "url"),
    ("url",),
    ("output_url",),
    ("image_url",),
)


def _dig(obj: Any, path: Tuple) -> Any:
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
        elif not isinstance(obj, dict):
            return None
        obj = obj[key] if isinstance(key, int) else obj.get(key)
    return obj


def _inline_image(body: Any) -> Optional[str]:
    parts = _dig(body, ("candidates", 0, "content", "parts")) or []
    for part in parts:
        if not isinstance(part, dict):
            continue
        inline = part.get("inline_data") or part.get("inlineData")
        if isinstance(inline, dict) and inline.get("data"):
            mime = inline.get("mime_type") or inline.get("mimeType") or "image/png"
            return f"data:{mime};base64,{inline['data']}"
    return None


def extract_result_reference(body: Any) -> str:
    """
    Find the enhanced image reference in a successful response.

    Raises:
        MalformedResponse: no known shape matched
    """
    for path in RESULT_PATHS:
        value = _dig(body, path)
        if isinstance(value, str) and value:
            return value

    inline = _inline_image(body)
    if inline:
        return inline

    if isinstance(body, str) and body.startswith(("http://", "https://", "data:image/")):
        return body

    raise MalformedResponse(
        "The AI service completed but the result format was unrecognized.",
        "enhancement",
        details={"top_level_keys": sorted(body.keys()) if isinstance(body, dict) else type(body).__name__}
    )


def extract_output_size(body: Any) -> Optional[Tuple[int, int]]:
    for path in (("data", "image"), ("image",), ()):
        node = _dig(body, path) if path else body
        if isinstance(node, dict):
            width, height = node.get("width"), node.get("height")
            if isinstance(width, int) and isinstance(height, int):
                return width, height
    return None


class EnhancementClient(RemoteServiceClient):
    """Regenerates/upscales a product photo while preserving the product."""

    service_name = "enhancement"

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        require_api_key: bool = True,
        fallback_to_original: bool = False,
        **kwargs
    ):
        super().__init__(url, api_key=api_key, **kwargs)
        self.require_api_key = require_api_key
        self.fallback_to_original = fallback_to_original

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "EnhancementClient":
        return cls(
            settings.ENHANCEMENT_API_URL,
            api_key=settings.ENHANCEMENT_API_KEY,
            require_api_key=settings.ENHANCEMENT_REQUIRE_API_KEY,
            fallback_to_original=settings.ENHANCEMENT_FALLBACK_TO_ORIGINAL,
            timeout=settings.REMOTE_TIMEOUT_SECONDS,
            retry_policy=RetryPolicy.from_settings(settings),
            **kwargs
        )

    def set_api_key(self, api_key: Optional[str]):
        self.api_key = api_key or None

    def build_request(self, asset: Asset, options: EnhancementOptions) -> Dict[str, Any]:
        """The request body; always carries the subject-preservation rules."""
        _, image_size = TIER_TARGETS[options.quality_tier]
        return {
            "image": asset.source_base64,
            "mime_type": asset.media_type,
            "quality_tier": options.quality_tier.value,
            "image_size": image_size,
            "aspect_ratio": options.target_aspect_ratio.value,
            "preserve_subject_identity": options.preserve_subject_identity,
            "subject_preservation_instruction": SUBJECT_PRESERVATION_INSTRUCTION,
            "prompt": build_enhancement_prompt(options.quality_tier, options.refinement),
            "user_refinement": options.refinement,
        }

    async def enhance(self, asset: Asset, options: EnhancementOptions) -> EnhancementResult:
        """
        Enhance one asset.

        Raises:
            CredentialFailure: no key configured, or the service rejected it
            SafetyRejection: the service refused the image; never masked by the fallback
            ServiceError: any other failure, unless falling back to the original
        """
        if self.require_api_key and not self.api_key:
            raise CredentialFailure(
                "No API key configured for the enhancement service. Select a key and try again.",
                self.service_name
            )

        try:
            body, attempts = await self._call_with_retry(self.build_request(asset, options))
            reference = extract_result_reference(body)
        except (CredentialFailure, SafetyRejection):
            raise
        except ServiceError as exc:
            if not self.fallback_to_original:
                raise
            logger.warning(
                "enhancement_fallback_to_original",
                asset_id=asset.id,
                error=exc.message,
                error_code=exc.error_code
            )
            return EnhancementResult(
                reference=f"data:{asset.media_type};base64,{asset.source_base64}",
                quality_tier=options.quality_tier,
                aspect_ratio=options.target_aspect_ratio,
                output_size=(asset.width, asset.height),
                fallback_used=True,
                fallback_reason=exc.message,
            )

        return EnhancementResult(
            reference=reference,
            quality_tier=options.quality_tier,
            aspect_ratio=options.target_aspect_ratio,
            attempts=attempts,
            output_size=extract_output_size(body),
        )

"""
Exception Taxonomy and Global Exception Handling

Every failure the pipeline can record on an asset is an EtsyFlowError
subclass with a stable ``error_code``. Remote service errors additionally
declare whether they are ``retryable``.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from etsyflow.core.logging import get_logger, asset_id_var

logger = get_logger(__name__)

# Sentinel surfaced to callers so they can start a credential-selection flow
KEY_REQUIRED = "KEY_REQUIRED"


# =============================================================================
# Base Exception
# =============================================================================

class EtsyFlowError(Exception):
    """Base exception for EtsyFlow."""

    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: int = 500,
        asset_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.asset_id = asset_id or asset_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.error_code,
            "code": self.code,
            "asset_id": self.asset_id,
            "stage": self.stage,
            "details": self.details,
            "timestamp": datetime.utcnow().isoformat() + "Z"
        }


# =============================================================================
# Ingestion / Normalization
# =============================================================================

class NormalizationError(EtsyFlowError):
    """Raised when an uploaded file cannot be turned into a safe asset."""

    error_code = "NORMALIZATION_FAILED"

    def __init__(self, message: str, code: int = 422, **kwargs):
        super().__init__(message, code=code, stage="normalize", **kwargs)


class SizeLimitExceeded(NormalizationError):
    """Raised before decoding when a file is larger than the upload limit."""

    error_code = "SIZE_LIMIT_EXCEEDED"

    def __init__(self, size_bytes: int, limit_bytes: int, **kwargs):
        size_mb = size_bytes / (1024 * 1024)
        limit_mb = limit_bytes / (1024 * 1024)
        super().__init__(
            f"File size ({size_mb:.2f}MB) exceeds maximum allowed size ({limit_mb:.0f}MB). "
            f"Please compress or resize your image.",
            code=413,
            **kwargs
        )
        self.details["size_bytes"] = size_bytes
        self.details["limit_bytes"] = limit_bytes


class UnsupportedContainerFormat(NormalizationError):
    """Raised when a HEIC/HEIF container cannot be converted."""

    error_code = "UNSUPPORTED_CONTAINER_FORMAT"

    def __init__(self, message: str, **kwargs):
        super().__init__(
            f"{message} Export the photo as JPEG (or disable Live Photo / burst) and upload it again.",
            code=415,
            **kwargs
        )


class DecodeFailure(NormalizationError):
    """Raised when image bytes cannot be decoded."""

    error_code = "DECODE_FAILURE"


# =============================================================================
# Remote Services
# =============================================================================

class ServiceError(EtsyFlowError):
    """Raised when a remote AI service call fails."""

    error_code = "SERVICE_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        service: str,
        http_status: Optional[int] = None,
        code: int = 502,
        **kwargs
    ):
        super().__init__(message, code=code, **kwargs)
        self.service = service
        self.http_status = http_status
        self.details["service"] = service
        self.details["http_status"] = http_status


class TransientServiceFailure(ServiceError):
    """Overloaded, rate-limited, temporarily unavailable or timed out."""

    error_code = "TRANSIENT_SERVICE_FAILURE"
    retryable = True

    def __init__(self, message: str, service: str, **kwargs):
        super().__init__(message, service, code=503, **kwargs)


class CredentialFailure(ServiceError):
    """The caller lacks a valid credential for the remote service."""

    error_code = KEY_REQUIRED

    def __init__(self, message: str, service: str, **kwargs):
        super().__init__(message, service, code=401, **kwargs)


class SafetyRejection(ServiceError):
    """The remote model refused the request on safety grounds."""

    error_code = "SAFETY_REJECTION"

    def __init__(self, message: str, service: str, **kwargs):
        super().__init__(message, service, code=422, **kwargs)


class MalformedResponse(ServiceError):
    """Unparseable body or a response shape we do not recognize."""

    error_code = "MALFORMED_RESPONSE"


class InvalidServiceRequest(ServiceError):
    """The remote service rejected the request payload."""

    error_code = "INVALID_SERVICE_REQUEST"

    def __init__(self, message: str, service: str, **kwargs):
        super().__init__(message, service, code=400, **kwargs)


class AssetProcessingFailed(ServiceError):
    """Terminal failure after retries are exhausted, or an unclassified error."""

    error_code = "ASSET_PROCESSING_FAILED"


class EnhancementUnavailable(AssetProcessingFailed):
    """Enhancement failed and the original image was used instead."""

    error_code = "ENHANCEMENT_UNAVAILABLE"


# =============================================================================
# Orchestrator
# =============================================================================

class AssetNotFoundError(EtsyFlowError):
    """Raised when an asset id is not part of the batch."""

    error_code = "ASSET_NOT_FOUND"

    def __init__(self, asset_id: str, **kwargs):
        super().__init__(f"Asset '{asset_id}' not found in batch", code=404, asset_id=asset_id, **kwargs)


class InvalidTransitionError(EtsyFlowError):
    """Raised when an action is not allowed in the asset's current state."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, message: str, current_state: Optional[str] = None, **kwargs):
        super().__init__(message, code=409, **kwargs)
        if current_state:
            self.details["current_state"] = current_state


class NothingToExportError(EtsyFlowError):
    """Raised when an export is requested before any asset completed."""

    error_code = "NOTHING_TO_EXPORT"

    def __init__(self, message: str = "No completed assets to export", **kwargs):
        super().__init__(message, code=404, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(EtsyFlowError)
    async def etsyflow_exception_handler(request: Request, exc: EtsyFlowError):
        logger.warning(
            "etsyflow_exception",
            error=exc.message,
            error_code=exc.error_code,
            code=exc.code,
            stage=exc.stage,
            path=str(request.url.path)
        )

        return JSONResponse(status_code=exc.code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "error_code": EtsyFlowError.error_code,
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )

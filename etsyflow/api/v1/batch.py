"""
Batch Endpoints

POST   /api/v1/batch/assets              - Upload photos (normalize, then analyze in background)
GET    /api/v1/batch                     - Batch snapshot
PATCH  /api/v1/batch/settings            - Global prompt, prompt precedence, quality tier
PATCH  /api/v1/batch/assets/{id}/prompt  - Per-item prompt
POST   /api/v1/batch/assets/{id}/retry   - Re-enhance a completed/failed asset
POST   /api/v1/batch/assets/{id}/refine  - Set prompt and enhance one asset
DELETE /api/v1/batch/assets/{id}         - Remove asset (releases preview)
GET    /api/v1/batch/assets/{id}/preview - Preview bytes
POST   /api/v1/batch/enhance             - Start an enhancement pass in background
POST   /api/v1/batch/credentials         - Provide the enhancement API key
DELETE /api/v1/batch                     - Reset the batch
GET    /api/v1/batch/export              - ZIP of completed results
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Response, UploadFile
from pydantic import BaseModel, Field

from etsyflow.api.dependencies import get_export_packager, get_orchestrator
from etsyflow.core.config import QualityTier
from etsyflow.core.logging import get_logger
from etsyflow.pipeline.export import ExportPackager
from etsyflow.pipeline.normalizer import RawFile
from etsyflow.pipeline.orchestrator import BatchOrchestrator

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class PromptUpdate(BaseModel):
    """Per-item refinement text; blank clears the override."""
    prompt: Optional[str] = Field(default=None, max_length=2000)


class BatchSettingsUpdate(BaseModel):
    global_prompt: Optional[str] = Field(default=None, max_length=2000)
    use_global_prompt: Optional[bool] = Field(
        default=None,
        description="When true the global prompt overrides every per-item prompt"
    )
    target_mode: Optional[QualityTier] = None


class CredentialsRequest(BaseModel):
    api_key: str = Field(..., min_length=1)


class EnhancePassResponse(BaseModel):
    started: bool
    candidates: List[str]
    reason: Optional[str] = None


# =============================================================================
# Batch
# =============================================================================

@router.post("/assets")
async def upload_assets(
    files: List[UploadFile] = File(...),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """
    Ingest uploaded photos.

    Oversized or undecodable files are added in the error state; everything
    else is queued and analyzed concurrently in the background.
    """
    raw_files = []
    for upload in files:
        raw_files.append(RawFile(
            filename=upload.filename or "upload",
            media_type=upload.content_type or "application/octet-stream",
            data=await upload.read()
        ))

    created = await orchestrator.ingest(raw_files)
    orchestrator.analyze_in_background()

    logger.info("upload_received", files=len(raw_files))
    return {
        "created": [asset.id for asset in created],
        "batch": orchestrator.snapshot()
    }


@router.get("")
async def get_batch(orchestrator: BatchOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.snapshot()


@router.patch("/settings")
async def update_settings(
    body: BatchSettingsUpdate,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    orchestrator.update_settings(
        global_prompt=body.global_prompt,
        use_global_prompt=body.use_global_prompt,
        target_mode=body.target_mode
    )
    return orchestrator.snapshot()


@router.delete("")
async def reset_batch(orchestrator: BatchOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    removed = orchestrator.reset()
    return {"removed": removed}


# =============================================================================
# Per-asset actions
# =============================================================================

@router.patch("/assets/{asset_id}/prompt")
async def update_prompt(
    asset_id: str,
    body: PromptUpdate,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    return orchestrator.set_user_prompt(asset_id, body.prompt).to_response_dict()


@router.post("/assets/{asset_id}/retry")
async def retry_asset(
    asset_id: str,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    return orchestrator.retry_in_background(asset_id).to_response_dict()


@router.post("/assets/{asset_id}/refine")
async def refine_asset(
    asset_id: str,
    body: PromptUpdate,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    return orchestrator.refine_in_background(asset_id, body.prompt).to_response_dict()


@router.delete("/assets/{asset_id}")
async def remove_asset(
    asset_id: str,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    asset = orchestrator.remove_asset(asset_id)
    return {"removed": asset.id}


@router.get("/assets/{asset_id}/preview")
async def get_preview(
    asset_id: str,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
):
    data, content_type = orchestrator.read_preview(asset_id)
    return Response(content=data, media_type=content_type)


# =============================================================================
# Enhancement pass
# =============================================================================

@router.post("/enhance", response_model=EnhancePassResponse)
async def start_enhancement(orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    """Start enhancing every ready asset; a no-op when nothing is eligible."""
    plan = orchestrator.start_enhancement_pass_in_background()
    return plan.to_response_dict()


@router.post("/credentials")
async def set_credentials(
    body: CredentialsRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    orchestrator.set_enhancement_api_key(body.api_key)
    return {"credential_required": orchestrator.batch.credential_required}


# =============================================================================
# Export
# =============================================================================

@router.get("/export")
async def export_batch(
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    packager: ExportPackager = Depends(get_export_packager)
):
    archive = await packager.build_archive(orchestrator.completed_assets())
    return Response(
        content=archive.data,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{archive.filename}"',
            "X-Export-Entries": str(len(archive.entries)),
            "X-Export-Skipped": str(len(archive.skipped)),
        }
    )

"""
Capture Routes - Full-Page Capture

Provides endpoints for capturing a URL and retrieving the output:
- Start a capture (browser -> orchestrator -> image pipeline)
- Poll the progress of the running session
- Download the last result as a zip bundle

Only one capture runs at a time; a second request while one is active
gets HTTP 409.
"""

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field
import logging
from routes import get_deps
from bundle_exporter import build_bundle, bundle_filename
from utils.error_handler import create_success_response, handle_api_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["capture"])


class CaptureRequest(BaseModel):
    """Request model for capturing a page"""
    url: str = Field(..., min_length=1)
    viewport_width: int = Field(1280, ge=200, le=7680)
    viewport_height: int = Field(800, ge=200, le=4320)
    device_scale_factor: float = Field(1.0, gt=0, le=4)

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://example.com",
                "viewport_width": 1280,
                "viewport_height": 800,
                "device_scale_factor": 1.0
            }
        }


@router.post("/capture")
async def capture_page(request: CaptureRequest):
    """
    Capture a full page

    Body:
        url: Page to capture
        viewport_width / viewport_height: Browser viewport in CSS pixels
        device_scale_factor: Device pixel ratio

    Returns:
        Metadata document and per-section summaries
    """
    deps = get_deps()
    if not deps.capture_service:
        raise HTTPException(status_code=503, detail="Capture service not initialized")

    try:
        logger.info(f"[API] Capture requested for {request.url}")
        result = await deps.capture_service.capture_url(
            request.url,
            viewport_width=request.viewport_width,
            viewport_height=request.viewport_height,
            device_scale_factor=request.device_scale_factor,
        )
        return create_success_response(
            {
                "metadata": result.metadata,
                "section_count": len(result.sections),
                "total_size_bytes": result.total_size_bytes,
                "stitched_width": result.stitched_width,
                "stitched_height": result.stitched_height,
                "over_budget": any(s.over_budget for s in result.sections),
                "text_length": len(result.text),
            },
            message=f"Captured {len(result.sections)} section(s)",
        )
    except Exception as e:
        logger.error(f"[API] Capture failed: {e}")
        return handle_api_error(e)


@router.get("/capture/progress")
async def get_capture_progress():
    """
    Progress of the current (or just finished) capture session

    Returns:
        {phase, current, total, error, session_id}; phase is "idle" when no session is held
    """
    deps = get_deps()
    if not deps.orchestrator:
        raise HTTPException(status_code=503, detail="Capture orchestrator not initialized")

    return deps.orchestrator.get_progress().model_dump(mode="json")


@router.get("/capture/bundle")
async def download_bundle():
    """Zip archive of the last capture: sections, metadata.json, page_text.txt, links.json"""
    deps = get_deps()
    if not deps.capture_service:
        raise HTTPException(status_code=503, detail="Capture service not initialized")

    try:
        result = deps.capture_service.last_result
        return Response(
            content=build_bundle(result),
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{bundle_filename(result)}"'},
        )
    except Exception as e:
        logger.error(f"[API] Bundle download failed: {e}")
        return handle_api_error(e)

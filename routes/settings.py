"""
Settings Routes - Capture Settings

GET returns the stored settings merged over defaults; PUT merges a partial
update, validates it and persists the result. POST /settings/reset restores
the defaults.
"""

from fastapi import APIRouter, HTTPException
import logging
from routes import get_deps
from utils.error_handler import create_success_response, handle_api_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["settings"])


@router.get("/settings")
async def get_settings():
    """Current capture settings"""
    deps = get_deps()
    if not deps.settings_manager:
        raise HTTPException(status_code=503, detail="Settings manager not initialized")

    return create_success_response(deps.settings_manager.load_settings().model_dump(mode="json"))


@router.put("/settings")
async def update_settings(changes: dict):
    """
    Update capture settings

    Body:
        changes: Partial settings, e.g. {"compression_strategy": "lossless"}

    Returns:
        The complete settings after the update
    """
    deps = get_deps()
    if not deps.settings_manager:
        raise HTTPException(status_code=503, detail="Settings manager not initialized")

    try:
        settings = deps.settings_manager.save_settings(changes)
        logger.info(f"[API] Settings updated: {sorted(changes)}")
        return create_success_response(settings.model_dump(mode="json"), message="Settings saved")
    except Exception as e:
        logger.error(f"[API] Update settings failed: {e}")
        return handle_api_error(e)


@router.post("/settings/reset")
async def reset_settings():
    """Restore default settings and delete the stored file"""
    deps = get_deps()
    if not deps.settings_manager:
        raise HTTPException(status_code=503, detail="Settings manager not initialized")

    try:
        settings = deps.settings_manager.reset_settings()
        logger.info("[API] Settings reset to defaults")
        return create_success_response(settings.model_dump(mode="json"), message="Settings reset")
    except Exception as e:
        logger.error(f"[API] Reset settings failed: {e}")
        return handle_api_error(e)

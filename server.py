"""
Page Gobbler - FastAPI Server
Version: 0.1.0
"""

import logging
import os
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from capture_orchestrator import CaptureOrchestrator, DEFAULT_RELEASE_GRACE_S
from capture_pipeline import CapturePipeline
from capture_service import CaptureService
from rate_limiter import MIN_CAPTURE_INTERVAL_MS, get_rate_limiter
from settings_manager import SettingsManager
from routes import RouteDependencies, set_dependencies
from routes import capture as capture_routes
from routes import health as health_routes
from routes import settings as settings_routes

VERSION = "0.1.0"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger(__name__)

# Configuration (loaded from environment)
SETTINGS_DIR = os.getenv("SETTINGS_DIR", "config/settings")
CAPTURE_RATE_LIMIT_MS = float(os.getenv("CAPTURE_RATE_LIMIT_MS", str(MIN_CAPTURE_INTERVAL_MS)))
CAPTURE_RELEASE_GRACE_S = float(os.getenv("CAPTURE_RELEASE_GRACE_S", str(DEFAULT_RELEASE_GRACE_S)))
BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "true").lower() == "true"

# Create FastAPI app
app = FastAPI(
    title="Page Gobbler API",
    version=VERSION,
    description="Full-page screenshot capture, smart sectioning and adaptive compression"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"]
)


# Add validation error handler to log detailed errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log and return detailed validation errors"""
    logger.error(f"[VALIDATION ERROR] {request.method} {request.url}: {exc.errors()}")

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "detail": exc.errors(),
        }
    )


app.include_router(health_routes.router)
app.include_router(settings_routes.router)
app.include_router(capture_routes.router)


# Startup and Shutdown Events
@app.on_event("startup")
async def startup_event():
    """Build the capture stack and register it with the routes"""
    logger.info(f"[Server] Starting Page Gobbler v{VERSION}")

    settings_manager = SettingsManager(storage_dir=SETTINGS_DIR)
    orchestrator = CaptureOrchestrator(
        rate_limiter=get_rate_limiter(CAPTURE_RATE_LIMIT_MS),
        release_grace_s=CAPTURE_RELEASE_GRACE_S,
    )
    capture_service = CaptureService(
        orchestrator=orchestrator,
        pipeline=CapturePipeline(),
        settings_manager=settings_manager,
        headless=BROWSER_HEADLESS,
    )

    set_dependencies(RouteDependencies(
        capture_service=capture_service,
        orchestrator=orchestrator,
        settings_manager=settings_manager,
        version=VERSION,
    ))

    logger.info(f"[Server] Rate limit: {CAPTURE_RATE_LIMIT_MS}ms between snapshots")
    logger.info(f"[Server] Settings: {SETTINGS_DIR}/settings.json")
    logger.info(f"[Server] Browser: {'headless' if BROWSER_HEADLESS else 'headed'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("[Server] Shutting down Page Gobbler...")
    set_dependencies(RouteDependencies(version=VERSION))
    logger.info("[Server] Shutdown complete")


if __name__ == "__main__":
    # Default to port 3000, can be overridden by environment variable
    port = int(os.getenv("PORT", 3000))

    logger.info(f"Starting Page Gobbler v{VERSION}")
    logger.info(f"Server: http://localhost:{port}")
    logger.info(f"API: http://localhost:{port}/api")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info"
    )

"""FastAPI application."""
import logging
from pathlib import Path
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from adimages.endpoints import router
from adimages.errors import ImageServiceError
from adimages.schemas import ErrorOut
from adimages.settings import settings

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Ad Image Storage",
    description="Budget-bounded image ingestion for avatars and ad galleries",
    version="1.0.0"
)

# CORS middleware (configure for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(router)

# Stored paths are "/files/..." and storage keys are "files/...", so local
# files resolve under STORAGE_BASE_PATH with the prefix as subdirectory
if settings.STORAGE_TYPE == "local":
    files_prefix = settings.FILES_URL_PREFIX.rstrip("/")
    app.mount(
        files_prefix,
        StaticFiles(directory=Path(settings.STORAGE_BASE_PATH) / files_prefix.lstrip("/"), check_dir=False),
        name="files",
    )


@app.exception_handler(ImageServiceError)
async def image_service_error_handler(request: Request, exc: ImageServiceError):
    """Render domain errors as JSON with their mapped status."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)

    body = ErrorOut(
        error=exc.message,
        code=exc.error_code,
        details=exc.details,
        retryable=exc.retryable,
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Ad Image Storage",
        "version": "1.0.0",
        "endpoints": {
            "avatar": "PUT|GET|DELETE /v1/users/{owner_id}/avatar",
            "upload": "POST /v1/users/{owner_id}/ads/{ad_id}/images",
            "edit": "PATCH /v1/users/{owner_id}/ads/{ad_id}/images",
            "list": "GET /v1/ads/{ad_id}/images",
            "delete": "DELETE /v1/ads/{ad_id}/images?ids=",
            "main": "PUT /v1/ads/{ad_id}/images/main",
            "order": "PUT /v1/ads/{ad_id}/images/order",
            "preview": "POST /v1/images/preview"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}

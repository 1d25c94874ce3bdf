from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from formflow import __product__, __version__
from formflow.routes import submissions_router, templates_router, storage_router, downloads_router
from formflow.services.kv_store import KV_BACKEND, key_value_store
from formflow.services.legacy_migration import LEGACY_BACKEND, legacy_migration
from formflow.services.object_storage import OBJECT_STORAGE_BACKEND
from formflow.services.submission_service import submission_service


def uses_mongo() -> bool:
    return KV_BACKEND == "mongo" or LEGACY_BACKEND == "mongo" or OBJECT_STORAGE_BACKEND == "gridfs"


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"Starting {__product__} API (storage backend: {KV_BACKEND})")
    if uses_mongo():
        await database.connect()

    # Legacy blobs move into their collections on first access
    key_value_store.attach_migration(legacy_migration)

    yield

    # Shutdown
    logger.info(f"Shutting down {__product__} API")
    await submission_service.drain()
    key_value_store.detach_migration()
    await database.close()

# Create FastAPI app
app = FastAPI(
    title=f"{__product__} API",
    description="Document generation from templates with multi-channel distribution",
    version=__version__,
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(submissions_router)
app.include_router(templates_router)
app.include_router(storage_router)
app.include_router(downloads_router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": __product__,
        "version": __version__,
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "storage_backend": KV_BACKEND,
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8001")),
        reload=os.getenv("ENVIRONMENT") == "development"
    )

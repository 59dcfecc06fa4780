import structlog
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

from provn import __version__, config
from provn.api import auth, explore, licenses, processing, profiles, social, videos
from provn.core.database import check_database_connection, close_connection_pool, get_database_stats
from provn.core.storage import IPFSClient
from provn.core.utils import ensure_dir_exists
from provn.models.responses import ErrorResponse, HealthResponse
from provn.services import video_processing
from provn.services.blockchain import BlockchainService
from provn.services.pipeline import ProcessingPipeline, recover_stale_jobs

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    logger.info("Starting Provn API", version=__version__)
    try:
        ensure_dir_exists(config.TEMP_UPLOAD_DIR)

        app.state.ipfs_client = IPFSClient()
        app.state.blockchain = BlockchainService()
        app.state.pipeline = ProcessingPipeline(app.state.ipfs_client, app.state.blockchain)
        logger.info("Services initialized",
                   ipfs_backend=app.state.ipfs_client.backend,
                   mint_mode="dry_run" if app.state.blockchain.dry_run else "live",
                   max_concurrent_jobs=app.state.pipeline.max_concurrent_jobs)

        # Test database connection
        if check_database_connection():
            logger.info("Database connection verified")
            recover_stale_jobs()
        else:
            logger.warning("Database connection check failed")

    except Exception as e:
        logger.error("Failed to initialize application", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("Shutting down Provn API")
    close_connection_pool()


# Create FastAPI application
app = FastAPI(
    title="Provn API",
    description="Short-video platform with IP-NFT provenance: upload, fingerprint, pin and mint",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    responses={
        422: {"model": ErrorResponse, "description": "Validation Error"},
        500: {"model": ErrorResponse, "description": "Internal Server Error"},
    }
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(processing.router)
app.include_router(videos.router)
app.include_router(profiles.router)
app.include_router(social.router)
app.include_router(licenses.router)
app.include_router(explore.router)


@app.get("/", response_model=dict)
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Provn API",
        "version": __version__,
        "description": "Short-video platform with IP-NFT provenance",
        "docs_url": "/docs",
        "health_url": "/health",
        "chain_id": config.CHAIN_ID,
    }


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint with database, IPFS, chain and ffmpeg status."""
    try:
        db_healthy = check_database_connection()
        ipfs_health = request.app.state.ipfs_client.health_check()
        chain_health = request.app.state.blockchain.health_check()
        processing_health = video_processing.health_check()

        components = {
            "database": "healthy" if db_healthy else "unhealthy",
            "ipfs": ipfs_health["status"],
            "blockchain": chain_health["status"],
            "video_processing": processing_health["status"],
        }

        overall_status = "healthy" if all(s == "healthy" for s in components.values()) else "degraded"
        if not db_healthy:
            overall_status = "unhealthy"

        return HealthResponse(
            status=overall_status,
            version=__version__,
            components={
                **components,
                "ipfs_health": ipfs_health,
                "chain_health": chain_health,
                "video_processing_health": processing_health,
            }
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return HealthResponse(
            status="unhealthy",
            version=__version__,
            components={"error": str(e)}
        )


@app.get("/stats", response_model=dict)
async def get_system_stats(request: Request):
    """Table counts and processing queue state."""
    try:
        return {
            "database": get_database_stats(),
            "queue": request.app.state.pipeline.queue_status(),
            "api_version": __version__,
            "timestamp": time.time()
        }
    except Exception as e:
        logger.error("Error retrieving system stats", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error retrieving stats: {str(e)}"
        )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error("Unhandled exception",
                url=str(request.url), method=request.method, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_server_error", "message": "An unexpected error occurred"}
    )


if __name__ == "__main__":
    uvicorn.run(
        "provn.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        reload=config.DEBUG,
        log_config=None,  # We handle logging with structlog
    )

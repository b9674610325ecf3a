from contextlib import asynccontextmanager
from utils.utcnow import utcnow
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import traceback

from config import settings
from api import router as quests_router
from models.database import AsyncSessionLocal, init_database
from services.ledger_client import ledger_client
from services.protocol_registry import protocol_registry
from utils.logger import setup_logging, get_logger

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting quest verification service...")

    await init_database()
    logger.info("Database initialized")

    shared = protocol_registry.shared_identifiers()
    if shared:
        # Exclusion lists only break two-way ties; surface anything wider.
        logger.warning("Protocol identifiers shared across protocols", shared=shared)
    logger.info(
        "Ledger client ready",
        rpc_endpoint="helius" if settings.HELIUS_API_KEY else settings.SOLANA_RPC_URL,
        protocols=len(protocol_registry),
    )

    try:
        yield
    finally:
        logger.info("Shutting down quest verification service...")
        await ledger_client.close()


app = FastAPI(
    title="QuestLedger",
    description="Auto-verification of savings and DeFi quests against the Solana ledger",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500, content={"detail": "Internal server error", "error": str(exc)}
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(quests_router, prefix="/api", tags=["Quests"])


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness probe - is the service running?"""
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@app.get("/health/ready")
async def readiness_check():
    """Readiness probe - can we reach the completion store?"""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return JSONResponse(status_code=503, content={"status": "not_ready", "error": str(e)})
    return {"status": "ready", "timestamp": utcnow().isoformat()}


if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        timeout_keep_alive=30,
    )

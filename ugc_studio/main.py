import os
import time
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from . import metrics
from .locks import get_redis
from .middleware import RequestMetricsMiddleware
from .pipeline import video_router, library_router
from .pipeline.store import supabase_configured

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())
    if not supabase_configured():
        logger.warning("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY missing — records live in memory only")
    if get_redis() is None:
        logger.info("No Redis — step locks are process-local")
    yield
    logger.info("Worker shutting down...")


app = FastAPI(title="UGC Studio Worker", lifespan=lifespan)
app.add_middleware(RequestMetricsMiddleware)
app.include_router(video_router)
app.include_router(library_router)


@app.get("/health")
def health_check():
    """Verify worker is running and provider keys are configured."""
    gemini_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
    return {
        "status": "ok",
        "kie_api_key_set": bool(os.environ.get("KIE_API_KEY") or os.environ.get("KIE_AI_API_KEY")),
        "fal_key_set": bool(os.environ.get("FAL_KEY") or os.environ.get("FAL_API_KEY")),
        "sync_so_api_key_set": bool(os.environ.get("SYNC_SO_API_KEY")),
        "gemini_api_key_set": bool(gemini_key),
        "gemini_key_prefix": gemini_key[:8] + "..." if gemini_key else "MISSING",
        "supabase_configured": supabase_configured(),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    metrics.set_gauge("redis_connected", 1.0 if get_redis() is not None else 0.0)
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("ugc_studio.main:app", host="0.0.0.0", port=port, reload=True)

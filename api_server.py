"""
Settlement Engine API Server
FastAPI application hosting the settlement routes and the auto-release worker
"""
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI  # noqa: E402

from config import Config  # noqa: E402

logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
)
logger = logging.getLogger(__name__)

from database import create_tables, test_connection  # noqa: E402
from jobs.auto_release_worker import AutoReleaseWorker  # noqa: E402
from routes.settlement_api import register_error_handlers, router as settlement_router  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify config and schema, fire overdue releases, start the poller.
    Shutdown: stop the poller.
    """
    logger.info(f"🔧 Settlement worker {os.getpid()} starting...")
    Config.log_environment_config()
    test_connection()
    create_tables()

    worker = None
    if Config.AUTO_RELEASE_ENABLED:
        worker = AutoReleaseWorker()
        await worker.reconcile_on_startup()
        worker.start()
    else:
        logger.warning("⚠️ Auto-release worker disabled (AUTO_RELEASE_ENABLED=false)")
    app.state.auto_release_worker = worker

    yield

    if worker is not None:
        worker.stop()
    logger.info(f"🔄 Settlement worker {os.getpid()} shutting down...")


app = FastAPI(
    title="Order-Escrow Settlement Engine",
    description="Escrow ledger, order lifecycle, auto-release and dispute gate",
    lifespan=lifespan,
)
register_error_handlers(app)
app.include_router(settlement_router)


@app.get("/health")
def health():
    return {"status": "ok", "environment": Config.ENVIRONMENT}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_server:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

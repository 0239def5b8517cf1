import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .adapters.entry.http.admin_router import router as admin_router
from .adapters.entry.http.keeper_router import router as keeper_router
from .workers.keeper_supervisor import KeeperSupervisor


def _setup_logging():
    """
    Configure basic logging for the whole process.
    """
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(supervisor: KeeperSupervisor = None) -> FastAPI:
    supervisor = supervisor or KeeperSupervisor()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context for startup/shutdown lifecycle.
        """
        _setup_logging()
        logging.getLogger(__name__).info("Starting api-keeper (lifespan startup)...")
        await supervisor.start()

        app.state.supervisor = supervisor
        app.state.db = supervisor.db

        try:
            yield
        finally:
            logging.getLogger(__name__).info("Shutting down api-keeper (lifespan shutdown)...")
            await supervisor.stop()

    app = FastAPI(title="api-keeper", version="0.1.0", lifespan=lifespan)
    app.include_router(keeper_router)
    app.include_router(admin_router)

    @app.get("/healthz")
    async def healthz():
        """
        Liveness probe endpoint.
        """
        return {"status": "ok"}

    return app


app = create_app()

from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import bind_coordinator, router
from .config import get_settings
from .coordinator import build_coordinator
from .logging_setup import close_logging, setup_logging


def create_app(coordinator=None):
    """Build the service app; without a coordinator one is wired from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if coordinator is None:
            setup_logging()
            owned = build_coordinator()
            bind_coordinator(owned)
        try:
            yield
        finally:
            if owned is not None:
                await owned.aclose()
                bind_coordinator(None)
                close_logging()

    app = FastAPI(title="Agent Service", lifespan=lifespan)
    app.include_router(router)
    if coordinator is not None:
        bind_coordinator(coordinator)
    return app


# convenience for running locally
if __name__ == '__main__':
    import uvicorn
    cfg = get_settings()
    app = create_app()
    uvicorn.run(app, host=cfg.API_HOST, port=cfg.API_PORT)

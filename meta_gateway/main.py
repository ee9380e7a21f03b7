"""FastAPI entrypoint.

Run with: uvicorn meta_gateway.main:app
"""

import logging

from fastapi import FastAPI

from . import __version__, schemas, state
from .routers import auth as auth_router
from .utils.env import load_env_file

logging.basicConfig(level=logging.INFO)
load_env_file()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Meta Ads Gateway",
        description="""
        Resilient multi-tenant access to the Meta Marketing API.

        ## Authentication

        Log in through /auth/login and /auth/callback. The callback returns a
        session token; send it as `Authorization: Bearer <token>`.
        """,
        version=__version__,
    )

    app.include_router(auth_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        limiter = state.get_rate_limiter()
        return schemas.HealthResponse(status="ok", tier=limiter.tier, version=__version__)

    @app.on_event("shutdown")
    async def shutdown_event():
        await state.close()
        logging.info("[SHUTDOWN] Shared state released")

    return app


app = create_app()

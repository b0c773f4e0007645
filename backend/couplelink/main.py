"""
ASGI application for the couple pairing backend.

Run with: uvicorn couplelink.main:app
"""

import logging

from fastapi import FastAPI

from couplelink import __version__
from couplelink.api.routes import account, admin_orphans, pairing, subscription
from couplelink.platform.errors import ErrorHandlerMiddleware, register_error_handlers

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title="CoupleLink", version=__version__)
    app.add_middleware(ErrorHandlerMiddleware)
    register_error_handlers(app)

    app.include_router(pairing.router)
    app.include_router(subscription.router)
    app.include_router(account.router)
    app.include_router(admin_orphans.router)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "version": __version__}

    return app


app = create_app()

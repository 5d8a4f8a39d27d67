"""FastAPI application factory."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from expenso.api.routes import categories, sheets, sync as sync_routes
from expenso.errors import (
    AuthRequiredError,
    DuplicateNameError,
    ExpensoError,
    NotFoundError,
    OfflineError,
    ProtectedEntityError,
    ValidationError,
)
from expenso.services import Services, build_services

_STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    DuplicateNameError: 409,
    ProtectedEntityError: 403,
    AuthRequiredError: 401,
    OfflineError: 503,
}


def _status_for(exc: ExpensoError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_CODES:
            return _STATUS_CODES[cls]
    return 400


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build and return the FastAPI app.

    Args:
        services: Pre-built service container (tests). When omitted it is
                  built from settings on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            app.state.services = build_services()
        await app.state.services.start()
        yield
        await app.state.services.stop()

    app = FastAPI(
        title="Expenso API",
        description="Offline-first expense ledger with background sync",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(ExpensoError)
    async def expenso_error_handler(request: Request, exc: ExpensoError):
        return JSONResponse(
            status_code=_status_for(exc),
            content={"detail": str(exc), "code": exc.code},
        )

    app.include_router(sheets.router, prefix="/sheets", tags=["sheets"])
    app.include_router(categories.router, prefix="/categories", tags=["categories"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()

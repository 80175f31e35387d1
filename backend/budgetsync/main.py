from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from budgetsync.core.config import configure_logging, settings
from budgetsync.routers.assets import router as assets_router
from budgetsync.routers.sync import router as sync_router
from budgetsync.services.state import Services, build_services


def create_app(services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        app.state.services = services or await build_services(settings)
        await app.state.services.start()
        try:
            yield
        finally:
            await app.state.services.aclose()

    app = FastAPI(lifespan=lifespan)

    app.include_router(sync_router)
    # Catch-all asset proxy goes last so it never shadows the sync routes.
    app.include_router(assets_router)

    @app.exception_handler(HTTPException)
    def http_exc_handler(_, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "detail": exc.detail})

    return app


app = create_app()

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from analytics_engine.api.routes import router
from analytics_engine.errors import EngineError
from analytics_engine.services.container import EngineServices, build_services
from analytics_engine.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")


def create_app(settings: Settings | None = None, services: EngineServices | None = None) -> FastAPI:
    settings = settings or get_settings()
    docs_enabled = settings.environment != "production"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services(settings)
        logger.info(
            "analytics.startup | %s",
            {
                "environment": settings.environment,
                "cache_backend": "redis" if settings.redis_url else "memory",
                "chart_types": app.state.services.registry.chart_types(),
            },
        )
        try:
            yield
        finally:
            await app.state.services.close()

    app = FastAPI(
        title="Practice Analytics Engine",
        description="Chart, dimension expansion and dashboard rendering service",
        version="0.1.0",
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )

    @app.exception_handler(EngineError)
    async def handle_engine_error(_request: Request, exc: EngineError) -> JSONResponse:
        logger.warning(
            "analytics.handled_error | %s",
            {
                "error_id": exc.error_id,
                "code": exc.code,
                "status_code": exc.status_code,
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": exc.code, "message": exc.message, "error_id": exc.error_id}},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
        error_id = str(uuid.uuid4())
        logger.exception("analytics.unhandled_error | %s", {"error_id": error_id})
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "Unexpected internal error",
                    "error_id": error_id,
                }
            },
        )

    @app.middleware("http")
    async def request_timeout_middleware(request: Request, call_next):  # type: ignore[override]
        try:
            return await asyncio.wait_for(call_next(request), timeout=settings.dashboard_render_timeout_seconds + 5)
        except asyncio.TimeoutError:
            error = EngineError(status_code=504, code="request_timeout", message="Request timed out")
            return JSONResponse(
                status_code=error.status_code,
                content={"error": {"code": error.code, "message": error.message, "error_id": error.error_id}},
            )

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(app, host=_settings.api_host, port=_settings.api_port)

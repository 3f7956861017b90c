from contextlib import asynccontextmanager
from functools import lru_cache
import logging
from pathlib import Path
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from validator.api.routers.indexing import build_indexing_router
from validator.api.routers.requirements import build_requirements_router
from validator.api.routers.sessions import build_sessions_router
from validator.api.routers.system import router as system_router
from validator.api.services.runtime import ValidatorServices, build_services
from validator.config import settings
from validator.db import init_db
from validator.observability import bind_request, configure_logging, normalize_request_id, sanitize_for_logging

logger = logging.getLogger("validator.api")


@lru_cache(maxsize=1)
def _cached_services() -> ValidatorServices:
    return build_services(settings)


def get_services() -> ValidatorServices:
    return _cached_services()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    init_db()
    Path(settings.storage_root).mkdir(parents=True, exist_ok=True)
    logger.info(
        "application_startup",
        extra={"event": "application_startup", "environment": settings.app_env, "storage": settings.storage_backend},
    )
    yield
    if _cached_services.cache_info().currsize:
        # Lets queued validation jobs drain before the process exits.
        _cached_services().close(wait=True)
        _cached_services.cache_clear()
    logger.info("application_shutdown", extra={"event": "application_shutdown"})


def _log_request(event: str, request: Request, started: float | None = None, **fields: object) -> None:
    extra: dict[str, object] = {"event": event, "method": request.method, "path": request.url.path, **fields}
    if started is not None:
        extra["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
    if event == "request_failed":
        logger.exception(event, extra=extra)
    else:
        logger.info(event, extra=extra)


def create_app() -> FastAPI:
    origins = settings.cors_origins_list
    if settings.cors_allow_credentials and "*" in origins:
        raise RuntimeError("Invalid CORS_ORIGINS: wildcard '*' is not allowed when credentials are enabled.")

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", settings.request_id_header],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        with bind_request(normalize_request_id(request.headers.get(settings.request_id_header))) as request_id:
            request.state.request_id = request_id
            started = time.perf_counter()
            _log_request("request_started", request, query=sanitize_for_logging(dict(request.query_params)))
            try:
                response = await call_next(request)
            except Exception:
                _log_request("request_failed", request, started)
                raise
            response.headers[settings.request_id_header] = request_id
            _log_request("request_completed", request, started, status_code=response.status_code)
            return response

    # Routers resolve services through the module attribute so tests can swap them.
    app.include_router(system_router)
    app.include_router(build_sessions_router(get_services=lambda: get_services()))
    app.include_router(build_indexing_router(get_services=lambda: get_services()))
    app.include_router(build_requirements_router(get_services=lambda: get_services()))
    return app


app = create_app()

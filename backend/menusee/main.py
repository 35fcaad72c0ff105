from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from .api import router
from .config import PipelineConfig, load_config
from .errors import ConfigurationError, InvalidTransitionError, MenuSeeError, NotFoundError
from .observability import GIT_SHA, RELEASE_VERSION, configure_logging
from .service import MenuService
from .uploads import UploadError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, exc: MenuSeeError) -> JSONResponse:
    content = {"detail": exc.message, "error_code": exc.code.value}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=status_code, content=content)


def create_app(config: Optional[PipelineConfig] = None, service: Optional[MenuService] = None) -> FastAPI:
    configure_logging()
    config = config or (service.config if service is not None else load_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        svc = app.state.service if getattr(app.state, "service", None) is not None else MenuService(config)
        app.state.service = svc
        await svc.start()
        logger.info(
            "MenuSee API started (release=%s, sha=%s, store=%s, queue=%s)",
            RELEASE_VERSION,
            GIT_SHA,
            config.store_backend,
            config.job_queue,
        )
        try:
            yield
        finally:
            await svc.close()

    app = FastAPI(title="MenuSee API", version="0.1.0", lifespan=lifespan)
    app.state.service = service
    app.include_router(router)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(404, exc)

    @app.exception_handler(InvalidTransitionError)
    async def _conflict(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return _error_response(409, exc)

    @app.exception_handler(UploadError)
    async def _bad_upload(request: Request, exc: UploadError) -> JSONResponse:
        return _error_response(400, exc)

    @app.exception_handler(ConfigurationError)
    async def _misconfigured(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error("Configuration error: %s", exc.message)
        return _error_response(500, exc)

    @app.exception_handler(MenuSeeError)
    async def _domain_error(request: Request, exc: MenuSeeError) -> JSONResponse:
        logger.error("Unhandled domain error (%s): %s", exc.code.value, exc.message)
        return _error_response(500, exc)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok", "release": RELEASE_VERSION}

    @app.get("/assets/{key:path}")
    def get_asset(key: str, request: Request) -> Response:
        data = request.app.state.service.image_store.get(key)
        if data is None:
            return Response(status_code=404)
        return Response(content=data, media_type="image/jpeg")

    return app


app = create_app()

import logging
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from npm_registry import __version__
from npm_registry.api.attachments import router as attachments_router
from npm_registry.api.packages import router as packages_router
from npm_registry.api.registry import router as registry_router
from npm_registry.core.config import load_settings
from npm_registry.core.dependencies import RegistryContext
from npm_registry.core.errors import RegistryError
from npm_registry.domain.models import ServerSettings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: ServerSettings) -> None:
    """
    Console logging, plus a log file when NPM_REGISTRY_LOG_FILE is set.
    """
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    if settings.log_file:
        log_file = Path(settings.log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)


async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.reason} {exc.details}")
    else:
        logger.info(f"{request.method} {request.url.path}: {exc.status_code} {exc.reason}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(
    settings: Optional[ServerSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the FastAPI application around a freshly initialized registry.

    ``transport`` replaces the network for upstream requests (tests).
    """
    if settings is None:
        settings = load_settings()

    registry_path = Path(settings.registry_path)
    if not registry_path.exists():
        logger.info(f"Creating registry path {registry_path}")
        registry_path.mkdir(parents=True, mode=0o750)

    context = RegistryContext(settings, transport=transport)
    context.store.refresh_meta()

    app = FastAPI(
        title="npm registry",
        version=__version__,
        description="Local npm registry that proxies and caches an upstream registry.",
    )
    app.state.registry = context
    app.add_exception_handler(RegistryError, registry_error_handler)

    # Order matters: /-/... and /{name}/-/... before the generic package routes.
    app.include_router(registry_router, tags=["registry"])
    app.include_router(attachments_router, tags=["attachments"])
    app.include_router(packages_router, tags=["packages"])

    logger.info(f"Registry Path: {registry_path}")
    logger.info(f"With Base URL: {context.settings.public_base_url()}")
    return app


def main() -> None:
    """
    Start the registry with uvicorn, configured from the environment.
    """
    import uvicorn

    settings = load_settings()
    configure_logging(settings)

    uvicorn.run(
        create_app(settings),
        host=settings.hostname,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from npm_registry.api.params import package_name
from npm_registry.core.dependencies import RegistryContext, get_context
from npm_registry.core.errors import BadRequest, InvalidArgument
from npm_registry.domain.models import PackageDocument
from npm_registry.services.attachments import media_type

logger = logging.getLogger(__name__)
router = APIRouter()

JSON_CONTENT = "application/json"


def _require_json(request: Request) -> None:
    if media_type(request.headers.get("content-type")) != JSON_CONTENT:
        raise BadRequest(f"content-type MUST be {JSON_CONTENT}")


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise InvalidArgument(f"Request body is not valid JSON: {e}") from e


def _ok() -> dict:
    return {"ok": True}


# Each route is registered for scoped names first, see npm_registry.api.params.

# ---------------------------------------------------------------------------
# 1. GET /{name} and GET /{name}/{version}
# ---------------------------------------------------------------------------

async def _get_package(name: str, version: Optional[str], request: Request, ctx: RegistryContext) -> JSONResponse:
    logger.info(f"GET {request.url.path}")
    found = await ctx.forwarder.resolve(name, version)
    if isinstance(found, PackageDocument):
        return JSONResponse(content=found.to_json())
    return JSONResponse(content=found)


@router.get("/{name}")
@router.get("/{scope:scope}/{name}")
async def get_package(
    request: Request,
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> JSONResponse:
    """
    Package document, fetched from the upstream registry on a miss.
    """
    return await _get_package(package, None, request, ctx)


@router.get("/{name}/{version}")
@router.get("/{scope:scope}/{name}/{version}")
async def get_package_version(
    version: str,
    request: Request,
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> JSONResponse:
    """
    Metadata of a single version (or of the version a dist-tag points to).
    """
    return await _get_package(package, version, request, ctx)


# ---------------------------------------------------------------------------
# 2. Full publish: PUT /{name} and PUT /{name}/-rev/{revision}
# ---------------------------------------------------------------------------

@router.put("/{name}")
@router.put("/{scope:scope}/{name}")
@router.put("/{name}/-rev/{revision}")
@router.put("/{scope:scope}/{name}/-rev/{revision}")
async def publish_full(
    request: Request,
    revision: Optional[str] = None,
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> dict:
    logger.info(f"PUT {request.url.path}")
    _require_json(request)
    body = await _json_body(request)
    await ctx.publisher.publish_full(package, body, revision=revision)
    return _ok()


# ---------------------------------------------------------------------------
# 3. Versioned publish: PUT /{name}/{version}/-tag/{tagname}
# ---------------------------------------------------------------------------

@router.put("/{name}/{version}/-tag/{tagname}")
@router.put("/{scope:scope}/{name}/{version}/-tag/{tagname}")
async def publish_version(
    version: str,
    tagname: str,
    request: Request,
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> JSONResponse:
    logger.info(f"PUT {request.url.path}")
    _require_json(request)
    body = await _json_body(request)
    published = ctx.publisher.publish_version(package, version, body, tagname=tagname)
    return JSONResponse(status_code=status.HTTP_200_OK, content=published)


# ---------------------------------------------------------------------------
# 4. Tag assignment: PUT /{name}/{tagname} with the version as body
# ---------------------------------------------------------------------------

@router.put("/{name}/{tagname}")
@router.put("/{scope:scope}/{name}/{tagname}")
async def tag_package(
    tagname: str,
    request: Request,
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> JSONResponse:
    logger.info(f"TAG {request.url.path}")
    raw = (await request.body()).decode("utf-8", errors="replace").strip()

    # npm sends the version JSON-encoded; plain text is accepted too.
    version: Any = raw
    if media_type(request.headers.get("content-type")) == JSON_CONTENT or raw.startswith('"'):
        try:
            version = json.loads(raw)
        except ValueError as e:
            raise InvalidArgument(f"Request body is not valid JSON: {e}") from e

    document = ctx.publisher.tag(package, tagname, version)
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=document.to_json())


# ---------------------------------------------------------------------------
# 5. Unpublish: DELETE /{name} and DELETE /{name}/-rev/{revision}
# ---------------------------------------------------------------------------

@router.delete("/{name}")
@router.delete("/{scope:scope}/{name}")
@router.delete("/{name}/-rev/{revision}")
@router.delete("/{scope:scope}/{name}/-rev/{revision}")
async def unpublish(
    request: Request,
    revision: Optional[str] = None,
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> dict:
    logger.info(f"DELETE {request.url.path}")
    if ctx.publisher.unpublish(package):
        logger.info(f"Package {package} successfully deleted")
    return _ok()

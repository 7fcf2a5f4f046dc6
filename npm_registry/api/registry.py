"""
Registry-level endpoints under ``/-/``: health, counters, search and
maintenance actions.

These routes must be registered before the package routes, otherwise
``/-/meta`` would be read as version ``meta`` of a package called ``-``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from npm_registry.api.params import package_name
from npm_registry.core.dependencies import RegistryContext, get_context
from npm_registry.domain.models import PackageDocument, PackageFilter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/-")


def _summary(document: PackageDocument) -> Dict[str, Any]:
    extra = document.model_extra or {}
    return {
        "name": document.name,
        "description": extra.get("description"),
        "dist-tags": document.dist_tags,
        "versions": sorted(document.versions),
        "proxied": document.is_proxied,
    }


@router.get("/health")
async def health() -> dict:
    """
    Lightweight health check endpoint.
    """
    return {"status": "ok"}


@router.get("/meta")
async def registry_meta(ctx: RegistryContext = Depends(get_context)) -> dict:
    """
    Package counters of the registry.
    """
    meta = ctx.store.get_meta()
    return {"schemaVersion": meta.schema_version, **meta.counters()}


@router.get("/search")
async def search_packages(
    q: str = Query(default="", description="Substring the package name must contain."),
    filter: PackageFilter = Query(default="all", description="all, local or proxied packages."),
    ctx: RegistryContext = Depends(get_context),
) -> dict:
    results = ctx.store.query(q, filter)
    return {
        "count": len(results),
        "packages": {name: _summary(document) for name, document in results.items()},
    }


@router.post("/refresh/{name}")
@router.post("/refresh/{scope:scope}/{name}")
async def refresh_package(
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> dict:
    """
    Re-fetch the metadata of a package from the upstream registry.
    """
    logger.info(f"REFRESH {package}")
    await ctx.forwarder.refresh(package)
    return {"ok": True}


@router.post("/reindex")
async def reindex(ctx: RegistryContext = Depends(get_context)) -> dict:
    """
    Recompute the package counters from what is on disk.
    """
    meta = ctx.store.refresh_meta()
    return meta.counters()

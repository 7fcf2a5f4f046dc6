from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse

from npm_registry.api.params import package_name
from npm_registry.core.dependencies import RegistryContext, get_context
from npm_registry.domain.models import AttachmentUploadResponse, OkResponse
from npm_registry.services.attachments import OCTET_STREAM

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{name}/-/{attachment}")
@router.get("/{scope:scope}/{name}/-/{attachment}")
async def download_attachment(
    attachment: str,
    request: Request,
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> FileResponse:
    """
    Serve a tarball, downloading it from upstream first if the package is
    proxied and the file is not cached yet.
    """
    logger.info(f"GET {request.url.path}")
    served_path = await ctx.attachments.download(package, attachment)
    return FileResponse(
        path=str(served_path),
        filename=attachment,
        media_type=OCTET_STREAM,
    )


@router.put("/{name}/-/{attachment}", response_model=AttachmentUploadResponse)
@router.put("/{scope:scope}/{name}/-/{attachment}", response_model=AttachmentUploadResponse)
@router.put("/{name}/-/{attachment}/-rev/{revision}", response_model=AttachmentUploadResponse)
@router.put("/{scope:scope}/{name}/-/{attachment}/-rev/{revision}", response_model=AttachmentUploadResponse)
async def upload_attachment(
    attachment: str,
    request: Request,
    revision: Optional[str] = None,
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> AttachmentUploadResponse:
    """
    Store the raw request body as a tarball. Attachments are not versioned,
    the reported revision is always "1".
    """
    logger.info(f"PUT {request.url.path}")
    return await ctx.attachments.upload(
        package,
        attachment,
        request.headers.get("content-type"),
        request.stream(),
    )


@router.delete("/{name}/-/{attachment}", response_model=OkResponse)
@router.delete("/{scope:scope}/{name}/-/{attachment}", response_model=OkResponse)
@router.delete("/{name}/-/{attachment}/-rev/{revision}", response_model=OkResponse)
@router.delete("/{scope:scope}/{name}/-/{attachment}/-rev/{revision}", response_model=OkResponse)
async def delete_attachment(
    attachment: str,
    request: Request,
    revision: Optional[str] = None,
    package: str = Depends(package_name),
    ctx: RegistryContext = Depends(get_context),
) -> OkResponse:
    logger.info(f"DELETE {request.url.path}")
    ctx.attachments.delete(package, attachment)
    return OkResponse()

from contextlib import asynccontextmanager
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from gamecard.core.config import settings
from gamecard.core.errors import EncodingError, ExportError
from gamecard.core.http import assets_client, close_http_clients, init_http_clients, request_with_retries
from gamecard.core.logger import get_logger
from gamecard.data.models import Template
from gamecard.data.providers.resources import sniff_content_type
from gamecard.services.delivery import AttachmentDelivery
from gamecard.services.export import ExportController

logger = get_logger("main")

_PROXY_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Cache-Control": "public, max-age=3600",
}
_controller: ExportController | None = None


def _get_controller() -> ExportController:
    global _controller
    if _controller is None:
        _controller = ExportController()
    return _controller


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_http_clients()
    try:
        yield
    finally:
        try:
            await close_http_clients()
        except Exception:
            logger.exception("http_client_close_failed")


app = FastAPI(title="gamecard", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)


@app.get("/health")
async def health():
    return {"ok": True}


def _host_allowed(host: str) -> bool:
    allowed = settings.proxy_allowed_hosts
    if not allowed:
        return True
    host = host.lower()
    return any(host == h or host.endswith("." + h) for h in allowed)


@app.get("/image-proxy")
async def image_proxy(url: Optional[str] = Query(default=None)):
    target = (url or "").strip()
    if not target:
        raise HTTPException(status_code=400, detail="Missing url parameter", headers=_PROXY_HEADERS)
    parsed = urlparse(target)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise HTTPException(status_code=400, detail="Invalid URL protocol", headers=_PROXY_HEADERS)
    if not _host_allowed(parsed.hostname):
        raise HTTPException(status_code=403, detail="Host is not allowed", headers=_PROXY_HEADERS)

    try:
        resp = await request_with_retries(
            assets_client(),
            "GET",
            target,
            retries=settings.fetch_retries,
            backoff_base=0.4,
            backoff_max=2.0,
        )
    except httpx.HTTPError as e:
        logger.warning("image_proxy_failed url=%s error=%s", target, e)
        raise HTTPException(status_code=502, detail="Failed to fetch image", headers=_PROXY_HEADERS) from e
    if resp.status_code < 200 or resp.status_code >= 300:
        logger.warning("image_proxy_upstream_status url=%s status=%s", target, resp.status_code)
        raise HTTPException(
            status_code=502,
            detail=f"Failed to fetch image: {resp.status_code}",
            headers=_PROXY_HEADERS,
        )
    data = resp.content
    if len(data) > settings.fetch_max_bytes:
        raise HTTPException(status_code=502, detail="Upstream image is too large", headers=_PROXY_HEADERS)
    content_type = resp.headers.get("content-type") or sniff_content_type(data, "image/png")
    logger.info("image_proxy_ok url=%s bytes=%s", target, len(data))
    return Response(content=data, media_type=content_type, headers=_PROXY_HEADERS)


class ExportRequest(BaseModel):
    template: Template
    records: list[dict[str, Any]] = Field(default_factory=list)
    format: Optional[str] = None
    scale: Optional[float] = Field(default=None, gt=0, le=4)
    file_name: Optional[str] = Field(default=None, alias="fileName")
    background_image: Optional[str] = Field(default=None, alias="backgroundImage")

    model_config = {"populate_by_name": True}


@app.post("/api/v1/export")
async def api_export(body: ExportRequest, request: Request):
    sink = AttachmentDelivery()
    try:
        result = await _get_controller().export(
            body.template,
            body.records,
            target_file_name=body.file_name,
            scale=body.scale,
            format=body.format,
            background_image=body.background_image,
            methods=[sink],
        )
    except EncodingError as e:
        raise HTTPException(status_code=422, detail=e.message) from e
    except ExportError as e:
        raise HTTPException(status_code=500, detail=e.message) from e
    image = sink.image
    headers = {"Content-Disposition": f'attachment; filename="{image.file_name}"'}
    if result.warnings:
        headers["X-Export-Warnings"] = str(len(result.warnings))
    logger.info(
        "api_export_ok template=%s file=%s client=%s",
        body.template.id,
        image.file_name,
        request.client.host if request.client else "unknown",
    )
    return Response(content=image.data, media_type=image.content_type, headers=headers)

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime
from typing import Optional
from urllib.parse import quote

import anyio
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from linkdrop import config
from linkdrop.db import ensure_connection
from linkdrop.services.files import FileInfo, FileService
from linkdrop.services.stats import fetch_storage_totals
from linkdrop.storage.base import CHUNK_SIZE, sanitize_extension
from linkdrop.tokens import is_valid_token

router = APIRouter()

logger = logging.getLogger("linkdrop")


class DownloadResponse(StreamingResponse):
    """Streaming response whose cleanup runs however the transfer ends."""

    def __init__(self, content, on_close, **kwargs):
        super().__init__(content, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            # Starlette skips background tasks on ClientDisconnect
            with anyio.CancelScope(shield=True):
                await run_in_threadpool(self.on_close)


def get_file_service(request: Request) -> FileService:
    return request.app.state.file_service


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit(name: str):
    def enforce_rate_limit(request: Request):
        limiter = request.app.state.rate_limiters[name]
        allowed, retry_after = limiter.hit(_client_id(request))
        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
                headers={"Retry-After": str(retry_after)},
            )

    return enforce_rate_limit


def require_valid_token(token: str) -> str:
    if not is_valid_token(token):
        raise HTTPException(status_code=400, detail="Invalid token")
    return token


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="seconds") + "Z"


def _human_limit(value: int) -> str:
    return f"{value / (1024 * 1024):.1f} MB"


def _info_payload(info: FileInfo) -> dict:
    return {
        "token": info.token,
        "originalName": info.original_name,
        "mimeType": info.mime_type,
        "size": info.size,
        "createdAt": _iso(info.created_at),
        "expiresAt": _iso(info.expires_at),
        "downloadCount": info.download_count,
        "maxDownloads": info.max_downloads,
        "remainingDownloads": info.remaining_downloads,
        "status": info.status,
    }


def _content_disposition(original_name: str) -> str:
    basename = original_name.replace("\\", "/").rsplit("/", 1)[-1]
    fallback = "".join(ch for ch in basename if 32 <= ord(ch) < 127 and ch not in {'"', ";"}).strip()
    fallback = fallback or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(basename, safe='')}"


def _parse_expires_at(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid expiresAt")


def _parse_max_downloads(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="maxDownloads must be a positive integer")


def _check_file_type(filename: str, content_type: str) -> None:
    if config.ALLOWED_MIME and content_type.lower() not in config.ALLOWED_MIME:
        logger.warning("event=upload_rejected reason=mime_type content_type=%s", content_type)
        raise HTTPException(status_code=400, detail="File type not allowed")
    if config.ALLOWED_EXTS:
        allowed = {ext.lstrip(".") for ext in config.ALLOWED_EXTS}
        if sanitize_extension(filename).lstrip(".") not in allowed:
            logger.warning("event=upload_rejected reason=extension filename=%s", filename)
            raise HTTPException(status_code=400, detail="File extension not allowed")


def _stage_upload(upload_file: UploadFile) -> tuple[str, int]:
    """Copy the request body to a staging file, enforcing MAX_FILE_SIZE."""
    staging = tempfile.NamedTemporaryFile(
        prefix="linkdrop-", suffix=".upload", dir=config.STAGING_DIR, delete=False
    )
    size_bytes = 0
    try:
        with staging:
            while True:
                chunk = upload_file.file.read(CHUNK_SIZE)
                if not chunk:
                    break
                size_bytes += len(chunk)
                if size_bytes > config.MAX_FILE_SIZE:
                    logger.warning(
                        "event=upload_rejected reason=max_size filename=%s limit_bytes=%s",
                        upload_file.filename,
                        config.MAX_FILE_SIZE,
                    )
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Maximum allowed size is {_human_limit(config.MAX_FILE_SIZE)}.",
                    )
                staging.write(chunk)
    except BaseException:
        os.unlink(staging.name)
        raise
    return staging.name, size_bytes


@router.get("/healthz", include_in_schema=False)
def healthz():
    return PlainTextResponse("OK")


@router.get("/readyz", include_in_schema=False)
def readyz(request: Request):
    if request.app.state.draining:
        return PlainTextResponse("draining", status_code=503)
    if not ensure_connection(request.app.state.engine):
        logger.error("event=readiness_failed reason=db_unreachable")
        return PlainTextResponse("db not ready", status_code=503)
    return PlainTextResponse("ok")


@router.post("/api/upload", dependencies=[Depends(rate_limit("api")), Depends(rate_limit("upload"))])
def upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    expires_at: Optional[str] = Form(None, alias="expiresAt"),
    max_downloads: Optional[str] = Form(None, alias="maxDownloads"),
    service: FileService = Depends(get_file_service),
):
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    try:
        resolved_expires_at, resolved_max_downloads = service.resolve_options(
            _parse_expires_at(expires_at), _parse_max_downloads(max_downloads)
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    content_type = file.content_type or "application/octet-stream"
    _check_file_type(file.filename, content_type)

    staging_path, staged_bytes = _stage_upload(file)
    logger.debug("event=upload_staged filename=%s size_bytes=%s", file.filename, staged_bytes)
    try:
        result = service.upload(
            staging_path,
            original_name=file.filename,
            mime_type=content_type,
            expires_at=resolved_expires_at,
            max_downloads=resolved_max_downloads,
        )
    finally:
        try:
            os.unlink(staging_path)
        except FileNotFoundError:
            pass

    base = config.PUBLIC_BASE_URL or str(request.base_url).rstrip("/")
    relative_info_url = f"/api/file/{result.token}/info"
    relative_download_url = f"/api/file/{result.token}/download"
    return {
        "token": result.token,
        "infoUrl": f"{base}{relative_info_url}",
        "downloadUrl": f"{base}{relative_download_url}",
        "relativeInfoUrl": relative_info_url,
        "relativeDownloadUrl": relative_download_url,
        "expiresAt": _iso(result.expires_at),
        "maxDownloads": result.max_downloads,
        "message": "File uploaded successfully",
        "file": {
            "originalName": result.original_name,
            "mimeType": result.mime_type,
            "size": result.size,
        },
    }


@router.get(
    "/api/file/{token}/download",
    dependencies=[Depends(rate_limit("api")), Depends(rate_limit("download"))],
)
def download(
    token: str = Depends(require_valid_token),
    service: FileService = Depends(get_file_service),
):
    granted = service.open_download(token)
    record = granted.record
    headers = {
        "Content-Length": str(record.size_bytes),
        "Content-Disposition": _content_disposition(record.original_name),
        "Cache-Control": "no-store",
    }
    return DownloadResponse(
        granted.stream,
        on_close=lambda: service.finish_download(granted),
        media_type=record.mime_type,
        headers=headers,
    )


@router.get("/api/file/{token}/info", dependencies=[Depends(rate_limit("api"))])
def file_info(
    token: str = Depends(require_valid_token),
    service: FileService = Depends(get_file_service),
):
    info = service.info(token)
    payload = _info_payload(info)
    if info.status != "active":
        return JSONResponse(
            {"error": {"code": "GONE", "message": f"File {info.status}"}, "info": payload},
            status_code=410,
        )
    return {"info": payload}


@router.get("/metrics", dependencies=[Depends(rate_limit("api"))])
def metrics_snapshot(request: Request):
    payload = request.app.state.metrics.snapshot()
    payload.update(fetch_storage_totals(request.app.state.engine))
    response = JSONResponse(payload)
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response

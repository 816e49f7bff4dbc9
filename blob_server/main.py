import sys
from contextlib import asynccontextmanager
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import Optional

import aiofiles.os
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from starlette.requests import ClientDisconnect

from blob_server import config
from blob_server.app.errors import (
    InvalidContentType,
    InvalidMultipart,
    MissingFilePart,
    StorageError,
    UploadTooLarge,
)
from blob_server.app.services import ingestion
from blob_server.app.services.storage_manager import StorageManager
from blob_server.logger_config import setup_logger

logger = setup_logger()

CORS_METHODS = ["POST", "PUT", "GET", "HEAD", "OPTIONS"]
CORS_MAX_AGE = 86400

# Objects never change once stored, so they can be cached for good.
OBJECT_CACHE_CONTROL = "public, max-age=31536000, immutable"

ROOT_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


def etag_matches(header: Optional[str], etag: str, weak: bool = True) -> bool:
    """Check an If-Match / If-None-Match header against a strong `etag`.

    If-None-Match compares weakly, If-Match only accepts strong tags.
    """
    if not header:
        return False
    for candidate in header.split(","):
        candidate = candidate.strip()
        if candidate.startswith("W/"):
            if not weak:
                continue
            candidate = candidate[2:]
        if candidate == "*" or candidate == etag:
            return True
    return False


def _parse_http_date(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError, IndexError):
        return None


def check_preconditions(headers, etag: str, mtime: float) -> Optional[int]:
    """Evaluate the conditional headers of a GET or HEAD.

    Returns 412 or 304 when the request is answered with that status and
    None when the object should be sent. The date headers are only consulted
    when the matching tag header is absent; times compare to the second.
    """
    modified = int(mtime)

    if_match = headers.get("if-match")
    if if_match:
        if not etag_matches(if_match, etag, weak=False):
            return 412
    else:
        since = _parse_http_date(headers.get("if-unmodified-since"))
        if since is not None and modified > since:
            return 412

    if_none_match = headers.get("if-none-match")
    if if_none_match:
        if etag_matches(if_none_match, etag):
            return 304
    else:
        since = _parse_http_date(headers.get("if-modified-since"))
        if since is not None and modified <= since:
            return 304

    return None


async def upload_blob(request: Request):
    """Store the request body and answer with its content identifier."""
    storage_manager: StorageManager = request.app.state.storage_manager
    max_upload = storage_manager.limits.max_upload_bytes

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > max_upload:
        logger.info(f"Rejected upload with Content-Length {content_length}, limit is {max_upload}")
        raise HTTPException(status_code=413, detail="upload exceeds MAX_UPLOAD_GB")

    try:
        body = ingestion.limit_body(request.stream(), max_upload)
        source = ingestion.select_source(request.headers.get("content-type"), body)

        async with storage_manager.staging_writer().stage(source) as staged:
            result = await storage_manager.publish(staged)

    except InvalidContentType:
        raise HTTPException(status_code=400, detail="invalid content-type")
    except InvalidMultipart as e:
        logger.info(f"Rejected multipart upload: {e}")
        raise HTTPException(status_code=400, detail="invalid multipart body")
    except MissingFilePart:
        raise HTTPException(status_code=400, detail="multipart missing file part")
    except UploadTooLarge:
        raise HTTPException(status_code=413, detail="upload exceeds MAX_UPLOAD_GB")
    except ClientDisconnect:
        logger.info("Client disconnected during upload")
        raise HTTPException(status_code=400, detail="copy")
    except StorageError as e:
        logger.error(f"Storage failure during upload: {e.tag}", exc_info=True)
        raise HTTPException(status_code=500, detail=e.tag)

    if result.rejected:
        return JSONResponse(
            status_code=507,
            content={
                "error": "root storage limit exceeded",
                "used_bytes": result.used_bytes,
                "max_storage_bytes": result.max_storage_bytes,
            },
        )

    return {"id": result.blob_id, "size": result.size, "deduped": result.deduped}


def create_app(root: Path, limits: config.QuotaConfig) -> FastAPI:
    """Build the application for the store at `root`."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.storage_manager.initialize()
        yield

    app = FastAPI(title="Content-Addressed Blob Server", lifespan=lifespan)
    app.state.storage_manager = StorageManager(root, limits)

    # Reflect whatever origin asks, together with the headers it asks for.
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_methods=CORS_METHODS,
        allow_headers=["*"],
        max_age=CORS_MAX_AGE,
    )

    @app.api_route("/", methods=ROOT_METHODS)
    async def root(request: Request):
        if request.method in ("POST", "PUT"):
            return await upload_blob(request)
        raise HTTPException(status_code=405, detail="Method Not Allowed")

    @app.api_route("/{blob_id:path}", methods=["GET", "HEAD"])
    async def get_blob(blob_id: str, request: Request):
        """Serve a stored object by its identifier."""
        storage_manager: StorageManager = request.app.state.storage_manager

        # Malformed and unknown ids get the same answer.
        path = await storage_manager.locate(blob_id)
        if path is None:
            raise HTTPException(status_code=404, detail="not found")

        try:
            stat_result = await aiofiles.os.stat(path)
        except OSError:
            logger.error(f"Cannot stat {blob_id}", exc_info=True)
            raise HTTPException(status_code=500, detail="stat")

        etag = f'"{blob_id}"'
        headers = {
            "etag": etag,
            "cache-control": OBJECT_CACHE_CONTROL,
            "last-modified": formatdate(stat_result.st_mtime, usegmt=True),
        }

        status = check_preconditions(request.headers, etag, stat_result.st_mtime)
        if status == 412:
            raise HTTPException(status_code=412, detail="precondition failed")
        if status == 304:
            return Response(status_code=304, headers=headers)

        return FileResponse(
            path,
            media_type="application/octet-stream",
            headers=headers,
            stat_result=stat_result,
        )

    return app


def main():
    load_dotenv()

    try:
        settings = config.Settings.from_env()
        settings.blob_path.mkdir(parents=True, exist_ok=True)
        limits = config.load_quota_config(settings.blob_path)
    except (config.ConfigError, OSError) as e:
        logger.critical(f"Cannot start: {e}")
        sys.exit(1)

    logger.info("Starting blob server...")
    logger.info(f"Storage root: {settings.blob_path}")
    logger.info(
        f"listening on {settings.host}:{settings.port} "
        f"(max_storage={limits.max_storage_gb:.2f}GiB max_upload={limits.max_upload_gb:.2f}GiB)"
    )
    uvicorn.run(create_app(settings.blob_path, limits), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()

import base64
import binascii
import json
import logging
import os
from pathlib import Path
from urllib.parse import quote, urlencode

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response

from editor_bridge import __version__
from editor_bridge.config import Settings
from editor_bridge.conversion import (
    BridgeError,
    ConversionService,
    ConverterGateway,
    InvalidFingerprint,
    InvalidPath,
    SourceNotFound,
    UnsupportedFormat,
)
from editor_bridge.conversion.adapters import LocalWorkspace, X2TConverter
from editor_bridge.conversion.formats import content_type_for, document_category, normalize_extension
from editor_bridge.conversion.paths import extract_file_path_from_url, is_absolute_path
from editor_bridge.logging_setup import configure_logging

logger = logging.getLogger(__name__)

_CLIENT_ERRORS: dict[type[BridgeError], int] = {
    SourceNotFound: status.HTTP_404_NOT_FOUND,
    InvalidPath: status.HTTP_400_BAD_REQUEST,
    InvalidFingerprint: status.HTTP_400_BAD_REQUEST,
    UnsupportedFormat: status.HTTP_400_BAD_REQUEST,
}


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _to_http(e: BridgeError) -> HTTPException:
    status_code = _CLIENT_ERRORS.get(type(e), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return _error(status_code, e.code, str(e))


def _require_absolute(filepath: str | None) -> str:
    if not filepath:
        raise _error(400, "missing_parameter", "filepath query parameter is required")
    if not is_absolute_path(filepath):
        raise _error(400, InvalidPath.code, "filepath must be an absolute path")
    return filepath


def _service(request: Request) -> ConversionService:
    return request.app.state.service


def _settings(request: Request) -> Settings:
    return request.app.state.settings


async def _read_body(request: Request) -> bytes:
    limit = _settings(request).max_upload_bytes
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise _error(413, "payload_too_large", f"upload exceeds {_settings(request).max_upload_mb} MB")
    body = await request.body()
    if len(body) > limit:
        raise _error(413, "payload_too_large", f"upload exceeds {_settings(request).max_upload_mb} MB")
    return body


def _decode_unverified_jwt(token: str) -> dict[str, object]:
    """Return the JWT payload without checking the signature (local, trusted callers only)."""
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("Invalid JWT token format")
    pad = "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(parts[1] + pad).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError("Invalid JWT payload") from e
    if not isinstance(payload, dict):
        raise ValueError("Invalid JWT payload")
    return payload


def _docserver_error(status_code: int, message: str, details: str | None = None) -> JSONResponse:
    body: dict[str, object] = {"error": -1, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def create_app(settings: Settings | None = None, converter: ConverterGateway | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="Editor Bridge",
        version=__version__,
        description=(
            "Local HTTP bridge that converts office files to the editor binary "
            "format through x2t, caches the result per document and converts "
            "edited binaries back on save."
        ),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-File-Hash", "X-Cache", "X-Timing"],
    )

    converter = converter or X2TConverter(settings.converter_command, timeout=settings.converter_timeout_sec)
    app.state.settings = settings
    app.state.service = ConversionService(
        workspace=LocalWorkspace(settings.data_dir),
        converter=converter,
        font_dir=settings.font_dir,
        theme_dir=settings.theme_dir,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url)
        return await call_next(request)

    @app.on_event("startup")
    async def _startup() -> None:
        configure_logging()
        Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
        logger.info("Data dir %s, fonts %s, converter %s", settings.data_dir, settings.font_dir, settings.converter_command[0])
        if not os.path.isfile(settings.converter_command[0]):
            logger.warning("Converter executable not found at %s", settings.converter_command[0])

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    @app.get("/healthcheck", response_class=PlainTextResponse)
    def healthcheck() -> PlainTextResponse:
        return PlainTextResponse("true")

    @app.get("/api/convert")
    async def convert(request: Request, filepath: str | None = Query(None)) -> Response:
        """Convert an office file to the editor binary, served from cache when fresh.

        ``X-File-Hash`` carries the document fingerprint used for media URLs and
        the follow-up save; ``X-Cache`` is HIT or MISS.
        """
        path = _require_absolute(filepath)
        try:
            result = await _service(request).get_or_convert(path)
        except BridgeError as e:
            logger.error("Convert failed for %s: %s", path, e)
            raise _to_http(e)

        timing: dict[str, object] = {k: f"{v:.1f}" for k, v in result.timings.items()}
        timing["cacheHit"] = result.cache_hit
        logger.info("Timing breakdown (ms) for %s: %s", path, json.dumps(timing))
        headers = {
            "Content-Disposition": 'attachment; filename="Editor.bin"',
            "X-File-Hash": result.fingerprint,
            "X-Cache": "HIT" if result.cache_hit else "MISS",
            "X-Timing": json.dumps(timing),
        }
        return Response(content=result.data, media_type="application/octet-stream", headers=headers)

    @app.post("/api/save")
    async def save(
        request: Request,
        filepath: str | None = Query(None),
        filehash: str | None = Query(None),
    ) -> JSONResponse:
        """Write an edited document back to ``filepath``.

        The body is sniffed: ZIP containers are written as-is, anything else is
        converted from the editor binary using the media of ``filehash``.
        """
        path = _require_absolute(filepath)
        body = await _read_body(request)
        logger.info(
            "Save %s (filehash %s, %d bytes, content-type %s, head %s)",
            path,
            filehash or "not provided",
            len(body),
            request.headers.get("content-type"),
            body[:20].hex(),
        )
        try:
            result = await _service(request).save(path, body, filehash or None)
        except BridgeError as e:
            logger.error("Save failed for %s: %s", path, e)
            raise _to_http(e)
        return JSONResponse(content={"success": True, "path": result.path, "size": result.size})

    @app.post("/api/media/{filehash}")
    async def upload_media(request: Request, filehash: str, filename: str | None = Query(None)) -> JSONResponse:
        body = await _read_body(request)
        try:
            name = await _service(request).store_media(filehash, filename, body)
        except BridgeError as e:
            raise _to_http(e)
        return JSONResponse(content={"filename": name, "path": f"/api/media/{filehash}/{quote(name)}"})

    @app.get("/api/media/{filehash}/{imagefile}")
    async def get_media(request: Request, filehash: str, imagefile: str) -> FileResponse:
        try:
            path = _service(request).media_path(filehash, imagefile)
        except BridgeError as e:
            raise _to_http(e)
        if path is None:
            logger.warning("Image %s not found for %s", imagefile, filehash)
            raise _error(404, "not_found", "image not found")
        headers = {"Cache-Control": "public, max-age=31536000"}
        return FileResponse(path, media_type=content_type_for(os.path.splitext(imagefile)[1]), headers=headers)

    @app.get("/api/media-list/{filehash}")
    async def list_media(request: Request, filehash: str) -> list[str]:
        try:
            return _service(request).list_media(filehash)
        except BridgeError as e:
            raise _to_http(e)

    @app.get("/api/doc-base/{filehash}/{relative_path:path}")
    async def doc_base(request: Request, filehash: str, relative_path: str) -> FileResponse:
        if not relative_path:
            raise _error(400, "missing_parameter", "path is required")
        try:
            path = _service(request).document_file(filehash, relative_path)
        except BridgeError as e:
            raise _to_http(e)
        except PermissionError:
            logger.warning("Attempted directory traversal: %s/%s", filehash, relative_path)
            raise _error(403, "forbidden", "forbidden")
        if path is None:
            raise _error(404, "not_found", "file not found")
        return FileResponse(path, media_type=content_type_for(os.path.splitext(path)[1]))

    @app.post("/converter")
    async def docserver_convert(request: Request) -> JSONResponse:
        """Document Server compatible conversion (``{filetype, key, outputtype, url}``)."""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _docserver_error(400, "Request body must be JSON")
        if not isinstance(body, dict):
            return _docserver_error(400, "Request body must be a JSON object")

        payload: dict[str, object] = body
        if body.get("token"):
            try:
                payload = _decode_unverified_jwt(str(body["token"]))
            except ValueError as e:
                return _docserver_error(400, str(e))

        filetype, key, outputtype = payload.get("filetype"), payload.get("key"), payload.get("outputtype")
        if not filetype or not key or not outputtype:
            return _docserver_error(400, "Missing required fields: filetype, key, outputtype")
        url = payload.get("url")
        if not url:
            return _docserver_error(400, "Missing required field: url")

        input_path = str(url)
        if input_path.startswith(("http://", "https://")):
            extracted = extract_file_path_from_url(input_path)
            if extracted is None:
                return _docserver_error(400, f"Cannot extract file path from URL: {input_path}")
            input_path = extracted

        logger.info("Document Server conversion %s: %s -> %s", input_path, filetype, outputtype)
        title = payload.get("title")
        try:
            name = await _service(request).convert_document(
                input_path, str(outputtype), str(key), str(title) if title else None
            )
        except SourceNotFound:
            return _docserver_error(404, f"Input file not found: {input_path}")
        except UnsupportedFormat:
            return _docserver_error(400, f"Unsupported output format: {outputtype}")
        except BridgeError as e:
            logger.error("Document Server conversion failed: %s", e)
            return _docserver_error(500, "Conversion failed", str(e))

        base = str(request.base_url).rstrip("/")
        return JSONResponse(
            content={"url": f"{base}/converted/{name}", "fileType": normalize_extension(str(outputtype)), "error": 0}
        )

    @app.get("/converted/{filename}")
    async def converted(request: Request, filename: str) -> FileResponse:
        path = _service(request).converted_file(filename)
        if path is None:
            raise _error(404, "not_found", "file not found")
        return FileResponse(path, media_type=content_type_for(os.path.splitext(filename)[1]))

    @app.get("/open")
    async def open_document(request: Request, filepath: str | None = Query(None)) -> RedirectResponse:
        """Redirect to the editor loader for ``filepath``."""
        path = _require_absolute(filepath)
        filename = os.path.basename(path.replace("\\", "/"))
        base = str(request.base_url).rstrip("/")
        document_url = f"{base}/api/convert?{urlencode({'filepath': path}, quote_via=quote)}"
        params = {
            "url": document_url,
            "title": filename,
            "filepath": path,
            "filetype": normalize_extension(os.path.splitext(filename)[1]),
            "doctype": document_category(filename),
        }
        target = f"{settings.editor_loader_path}?{urlencode(params, quote_via=quote)}"
        logger.info("Opening %s via %s", filename, settings.editor_loader_path)
        return RedirectResponse(target, status_code=status.HTTP_302_FOUND)

    return app


app = create_app()


def run() -> None:
    """Run the bridge with uvicorn.

    Listens on HOST:PORT (default 127.0.0.1:38123). Set RELOAD=true for development.
    """
    import uvicorn

    settings = Settings.from_env()
    configure_logging()
    uvicorn.run("editor_bridge.webapi:app", host=settings.host, port=settings.port, reload=settings.reload)


if __name__ == "__main__":
    run()

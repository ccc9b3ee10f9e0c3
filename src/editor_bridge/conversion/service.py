import asyncio
import hashlib
import logging
import os
import time
import uuid

from .adapters import remove_quietly
from .errors import (
    ConverterError,
    InvalidFingerprint,
    InvalidPath,
    SaveError,
    SourceNotFound,
    UnsupportedFormat,
)
from .formats import FORMAT_EDITOR_BIN, format_code_for, is_zip_signature, normalize_extension, output_format_for
from .interfaces import ConversionJob, ConvertResult, ConverterGateway, SaveResult, WorkspaceGateway
from .paths import fingerprint as path_fingerprint
from .paths import is_absolute_path, is_fingerprint, resolve_within, safe_filename

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


class ConversionService:
    """Core domain service for the convert/save round trip.

    Framework-agnostic: the HTTP layer only translates query parameters and
    BridgeError subclasses. Converted artifacts live in per-fingerprint
    working directories supplied by the WorkspaceGateway; the filesystem is
    the only persistent state. The single in-memory structure is the map of
    in-flight conversions, which makes concurrent misses for one fingerprint
    share a single converter run.
    """

    def __init__(
        self,
        workspace: WorkspaceGateway,
        converter: ConverterGateway,
        *,
        font_dir: str | None = None,
        theme_dir: str | None = None,
    ) -> None:
        self._workspace = workspace
        self._converter = converter
        self._font_dir = font_dir
        self._theme_dir = theme_dir
        self._inflight: dict[str, asyncio.Task[bytes]] = {}

    def _job(
        self,
        *,
        source_path: str,
        destination_path: str,
        target_format: int,
        working_directory: str,
        title: str,
        key: str,
        source_format: int | None = None,
    ) -> ConversionJob:
        return ConversionJob(
            source_path=source_path,
            destination_path=destination_path,
            target_format=target_format,
            working_directory=working_directory,
            title=title,
            source_format=source_format,
            key=key,
            font_directory=self._font_dir,
            theme_directory=self._theme_dir,
        )

    # -- convert -----------------------------------------------------------

    async def get_or_convert(self, source_path: str) -> ConvertResult:
        """Return the editor binary for ``source_path``, converting on a cache miss.

        The cached ``Editor.bin`` is valid only while its mtime is strictly
        newer than the source's mtime.
        """
        start = time.perf_counter()
        if not is_absolute_path(source_path):
            raise InvalidPath(source_path)
        fp = path_fingerprint(source_path)
        artifact = self._workspace.artifact_path(fp)
        timings: dict[str, float] = {"validation": _elapsed_ms(start)}

        cached = await asyncio.to_thread(self._read_if_fresh, source_path, artifact)
        if cached is not None:
            timings["total"] = _elapsed_ms(start)
            logger.info("Cache hit for %s (%s, %d bytes)", source_path, fp, len(cached))
            return ConvertResult(data=cached, fingerprint=fp, cache_hit=True, timings=timings)

        conv_start = time.perf_counter()
        data = await self._convert_once(fp, source_path)
        timings["conversion"] = _elapsed_ms(conv_start)
        timings["total"] = _elapsed_ms(start)
        logger.info("Converted %s (%s, %d bytes)", source_path, fp, len(data))
        return ConvertResult(data=data, fingerprint=fp, cache_hit=False, timings=timings)

    @staticmethod
    def _read_if_fresh(source_path: str, artifact: str) -> bytes | None:
        try:
            source_mtime = os.stat(source_path).st_mtime_ns
        except FileNotFoundError:
            raise SourceNotFound(source_path) from None
        if not os.path.isfile(source_path):
            raise SourceNotFound(source_path)
        try:
            cache_mtime = os.stat(artifact).st_mtime_ns
        except FileNotFoundError:
            return None
        if cache_mtime <= source_mtime:
            logger.info("Cache stale for %s, reconverting", source_path)
            return None
        try:
            with open(artifact, "rb") as f:
                return f.read()
        except FileNotFoundError:
            # Replaced or removed between stat and open: fall through to a conversion.
            logger.warning("Cached artifact %s vanished after check; treating as miss", artifact)
            return None

    async def _convert_once(self, fp: str, source_path: str) -> bytes:
        task = self._inflight.get(fp)
        if task is None:
            task = asyncio.ensure_future(self._convert(fp, source_path))
            self._inflight[fp] = task
            task.add_done_callback(lambda t, key=fp: self._forget(key, t))
        else:
            logger.info("Joining in-flight conversion for %s", fp)
        # A disconnecting caller must not cancel the run other callers are awaiting.
        return await asyncio.shield(task)

    def _forget(self, fp: str, task: "asyncio.Task[bytes]") -> None:
        if self._inflight.get(fp) is task:
            del self._inflight[fp]
        if not task.cancelled():
            task.exception()

    async def _convert(self, fp: str, source_path: str) -> bytes:
        work_dir = self._workspace.working_dir(fp)
        artifact = self._workspace.artifact_path(fp)
        await asyncio.to_thread(os.makedirs, work_dir, exist_ok=True)
        # Convert next to the artifact, then rename, so readers never see a partial file.
        tmp_artifact = os.path.join(work_dir, f"Editor.{uuid.uuid4().hex}.tmp")
        job = self._job(
            source_path=source_path,
            destination_path=tmp_artifact,
            target_format=FORMAT_EDITOR_BIN,
            working_directory=work_dir,
            title=os.path.basename(source_path),
            key="api_conversion",
        )

        def publish() -> bytes:
            with open(tmp_artifact, "rb") as f:
                data = f.read()
            os.replace(tmp_artifact, artifact)
            return data

        try:
            await self._converter.invoke(job)
            return await asyncio.to_thread(publish)
        finally:
            remove_quietly(tmp_artifact)

    # -- save --------------------------------------------------------------

    async def save(self, filepath: str, payload: bytes, fingerprint: str | None = None) -> SaveResult:
        """Persist an editor payload to ``filepath``.

        ZIP-family payloads are already in the destination container format
        and are written verbatim. Anything else is treated as the editor
        binary and converted to the format implied by ``filepath``.
        """
        if not filepath or not is_absolute_path(filepath):
            raise InvalidPath(filepath)

        if is_zip_signature(payload):
            logger.info("Payload for %s is a ZIP container, saving directly", filepath)
            try:
                size = await asyncio.to_thread(self._write_direct, filepath, payload)
            except OSError as e:
                logger.error("Direct save to %s failed: %s", filepath, e)
                raise SaveError(f"failed to write {filepath}: {e}") from e
            return SaveResult(path=filepath, size=size, converted=False)

        ext = os.path.splitext(filepath)[1]
        info = output_format_for(ext)
        if info is None:
            logger.error("Unsupported save extension %r for %s", ext, filepath)
            raise UnsupportedFormat(ext)
        if fingerprint and not is_fingerprint(fingerprint):
            raise InvalidFingerprint(fingerprint)

        if fingerprint:
            work_dir = self._workspace.working_dir(fingerprint)
        else:
            work_dir = self._workspace.fallback_dir()
            logger.warning("Saving %s without a filehash; media from the source document is unavailable", filepath)

        changes_path = os.path.join(work_dir, f"temp_changes_{uuid.uuid4().hex}.bin")

        def stage() -> None:
            os.makedirs(work_dir, exist_ok=True)
            os.makedirs(os.path.dirname(filepath) or ".", exist_ok=True)
            with open(changes_path, "wb") as f:
                f.write(payload)

        logger.info("Converting editor binary (%d bytes) to %s for %s", len(payload), info.name, filepath)
        try:
            await asyncio.to_thread(stage)
            job = self._job(
                source_path=changes_path,
                source_format=FORMAT_EDITOR_BIN,
                destination_path=filepath,
                target_format=info.code,
                working_directory=work_dir,
                title=os.path.basename(filepath),
                key="api_save",
            )
            await self._converter.invoke(job)
            size = await asyncio.to_thread(os.path.getsize, filepath)
        except ConverterError as e:
            raise SaveError(f"conversion to {info.name} failed: {e}") from e
        except OSError as e:
            raise SaveError(f"failed to save {filepath}: {e}") from e
        finally:
            remove_quietly(changes_path)

        logger.info("Saved %s (%d bytes)", filepath, size)
        return SaveResult(path=filepath, size=size, converted=True)

    @staticmethod
    def _write_direct(filepath: str, payload: bytes) -> int:
        os.makedirs(os.path.dirname(filepath) or ".", exist_ok=True)
        with open(filepath, "wb") as f:
            f.write(payload)
        return os.stat(filepath).st_size

    # -- media -------------------------------------------------------------

    def _checked_fingerprint(self, fp: str) -> str:
        if not is_fingerprint(fp):
            raise InvalidFingerprint(fp)
        return fp

    async def store_media(self, fp: str, filename: str | None, data: bytes) -> str:
        """Store an uploaded image in the document's media directory; return its name."""
        media_dir = self._workspace.media_dir(self._checked_fingerprint(fp))
        name = safe_filename(filename) or f"image_{int(time.time() * 1000)}.png"
        target = os.path.join(media_dir, name)

        def write() -> None:
            os.makedirs(media_dir, exist_ok=True)
            with open(target, "wb") as f:
                f.write(data)

        await asyncio.to_thread(write)
        logger.info("Stored %d bytes of media at %s", len(data), target)
        return name

    def media_path(self, fp: str, filename: str) -> str | None:
        media_dir = self._workspace.media_dir(self._checked_fingerprint(fp))
        name = safe_filename(filename)
        if not name:
            return None
        path = os.path.join(media_dir, name)
        return path if os.path.isfile(path) else None

    def list_media(self, fp: str) -> list[str]:
        media_dir = self._workspace.media_dir(self._checked_fingerprint(fp))
        if not os.path.isdir(media_dir):
            return []
        return sorted(os.listdir(media_dir))

    def document_file(self, fp: str, relative: str) -> str | None:
        """Resolve a file inside the working directory.

        Raises PermissionError for paths escaping the directory, returns None
        when nothing is there.
        """
        work_dir = self._workspace.working_dir(self._checked_fingerprint(fp))
        resolved = resolve_within(work_dir, relative)
        if resolved is None:
            raise PermissionError(relative)
        return resolved if os.path.isfile(resolved) else None

    # -- Document Server style conversion ------------------------------------

    async def convert_document(self, source_path: str, output_type: str, key: str, title: str | None = None) -> str:
        """Convert ``source_path`` to ``output_type`` in the shared converted dir.

        Returns the generated file name.
        """
        code = format_code_for(output_type)
        if code is None:
            raise UnsupportedFormat(output_type)
        if not os.path.isfile(source_path):
            raise SourceNotFound(source_path)

        out_dir = self._workspace.converted_dir()
        await asyncio.to_thread(os.makedirs, out_dir, exist_ok=True)
        token = hashlib.md5(f"{key}{time.time_ns()}".encode("utf-8")).hexdigest()
        out_name = f"{token}.{normalize_extension(output_type)}"
        job = self._job(
            source_path=source_path,
            destination_path=os.path.join(out_dir, out_name),
            target_format=code,
            working_directory=out_dir,
            title=title or os.path.basename(source_path),
            key=f"converter_{key}",
        )
        await self._converter.invoke(job)
        return out_name

    def converted_file(self, filename: str) -> str | None:
        name = safe_filename(filename)
        if not name:
            return None
        path = os.path.join(self._workspace.converted_dir(), name)
        return path if os.path.isfile(path) else None



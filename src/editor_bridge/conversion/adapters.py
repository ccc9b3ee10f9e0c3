import asyncio
import logging
import os
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from .errors import ConverterTimeout, MissingOutput, NonZeroExit, SpawnFailure
from .formats import CSV_DELIMITER_COMMA, CSV_ENCODING_UTF8, FORMAT_CSV, is_csv
from .interfaces import ConversionJob, ConverterGateway, WorkspaceGateway

logger = logging.getLogger(__name__)

ARTIFACT_NAME = "Editor.bin"

XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XSD_NS = "http://www.w3.org/2001/XMLSchema"


class LocalWorkspace(WorkspaceGateway):
    """Per-fingerprint directories under ``<data_dir>/output``."""

    def __init__(self, data_dir: str) -> None:
        self._base = Path(data_dir).resolve()

    def working_dir(self, fingerprint: str) -> str:
        return str(self._base / "output" / fingerprint)

    def artifact_path(self, fingerprint: str) -> str:
        return str(Path(self.working_dir(fingerprint)) / ARTIFACT_NAME)

    def media_dir(self, fingerprint: str) -> str:
        return str(Path(self.working_dir(fingerprint)) / "media")

    def fallback_dir(self) -> str:
        return str(self._base / "output")

    def converted_dir(self) -> str:
        return str(self._base / "converted")


def wants_csv_options(job: ConversionJob) -> bool:
    if job.target_format == FORMAT_CSV:
        return True
    return is_csv(job.source_path) or is_csv(job.destination_path)


def build_descriptor(job: ConversionJob, *, timestamp: datetime | None = None) -> str:
    """Render the ``TaskQueueDataConvert`` XML that x2t reads from disk."""
    root = ET.Element("TaskQueueDataConvert", {"xmlns:xsi": XSI_NS, "xmlns:xsd": XSD_NS})

    def add(tag: str, value: object | None = None, *, nil: bool = False) -> ET.Element:
        el = ET.SubElement(root, tag)
        if nil or value is None:
            el.set("xsi:nil", "true")
        else:
            el.text = str(value)
        return el

    add("m_sKey", job.key)
    add("m_sFileFrom", job.source_path)
    if job.source_format is not None:
        add("m_nFormatFrom", job.source_format)
    add("m_sFileTo", job.destination_path)
    add("m_sTitle", job.title)
    add("m_nFormatTo", job.target_format)
    if wants_csv_options(job):
        add("m_nCsvTxtEncoding", CSV_ENCODING_UTF8)
        add("m_nCsvDelimiter", CSV_DELIMITER_COMMA)
    add("m_bPaid", nil=True)
    add("m_bEmbeddedFonts", nil=True)
    add("m_bFromChanges", "false")
    add("m_sFontDir", job.font_directory)
    add("m_sThemeDir", job.theme_directory)
    add("m_sJsonParams", "{}")
    add("m_nLcid", nil=True)
    ts = (timestamp or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z")
    add("m_oTimestamp", ts)
    add("m_bIsNoBase64", nil=True)
    add("m_sConvertToOrigin", nil=True)
    ET.SubElement(root, "m_oInputLimits")
    options = ET.SubElement(root, "options")
    # Never let the converter fetch remote resources; local ones may resolve to private IPs.
    ET.SubElement(options, "allowNetworkRequest").text = "false"
    ET.SubElement(options, "allowPrivateIP").text = "true"

    ET.indent(root, space="")
    return '<?xml version="1.0" encoding="utf-8"?>\n' + ET.tostring(root, encoding="unicode") + "\n"


def remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to delete transient file %s: %s", path, e)


class X2TConverter(ConverterGateway):
    """Runs the x2t command line converter once per ConversionJob.

    Only the exit code decides success; stdout/stderr are captured for the
    log. The descriptor file is removed on every exit path.
    """

    def __init__(self, command: Sequence[str], *, timeout: float | None = None) -> None:
        if not command:
            raise ValueError("converter command must not be empty")
        self._command = tuple(command)
        self._timeout = timeout if timeout and timeout > 0 else None

    async def invoke(self, job: ConversionJob) -> None:
        params_path = os.path.join(job.working_directory, f"params_{uuid.uuid4().hex}.xml")
        xml = build_descriptor(job)

        def write_params() -> None:
            with open(params_path, "w", encoding="utf-8") as f:
                f.write(xml)

        try:
            await asyncio.to_thread(write_params)
            logger.debug("Descriptor written to %s", params_path)
            await self._run(params_path, job)
        finally:
            remove_quietly(params_path)

    async def _run(self, params_path: str, job: ConversionJob) -> None:
        logger.info(
            "Converting %s -> %s (format %s%s)",
            job.source_path,
            job.destination_path,
            job.target_format,
            f" from {job.source_format}" if job.source_format is not None else "",
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                params_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Failed to start converter %s: %s", self._command[0], e)
            raise SpawnFailure(self._command[0], e) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            logger.error("Converter timed out after %ss for %s", self._timeout, job.source_path)
            raise ConverterTimeout(self._timeout or 0) from None
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        out_text = stdout.decode("utf-8", errors="replace")
        err_text = stderr.decode("utf-8", errors="replace")
        for line in out_text.splitlines():
            logger.debug("[x2t stdout] %s", line)
        for line in err_text.splitlines():
            logger.warning("[x2t stderr] %s", line)

        logger.info("Converter exited with code %s", proc.returncode)
        if proc.returncode != 0:
            raise NonZeroExit(proc.returncode, err_text)
        if not os.path.exists(job.destination_path):
            logger.error("Converter output not created: %s", job.destination_path)
            raise MissingOutput(job.destination_path)

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

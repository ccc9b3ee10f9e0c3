# tests/conftest.py

import asyncio
import json
import os
import sys
import time
from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from editor_bridge.config import Settings
from editor_bridge.conversion import ConversionJob, ConversionService, NonZeroExit
from editor_bridge.conversion.adapters import LocalWorkspace, X2TConverter
from editor_bridge.conversion.formats import FORMAT_EDITOR_BIN
from editor_bridge.webapi import create_app

FAKE_X2T = Path(__file__).parent / "fake_x2t.py"
MARKER = b"FAKEBIN\n"
CSV_CONTENT = "name,value\nalpha,1\nbeta,2\n"


class RecordingConverter:
    """In-process converter double with the same file semantics as fake_x2t.py."""

    def __init__(self) -> None:
        self.jobs: list[ConversionJob] = []
        self.delay = 0.0
        self.fail = False

    async def invoke(self, job: ConversionJob) -> None:
        self.jobs.append(job)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise NonZeroExit(1, "forced failure")
        data = Path(job.source_path).read_bytes()
        if job.target_format == FORMAT_EDITOR_BIN:
            data = MARKER + data
        elif job.source_format == FORMAT_EDITOR_BIN:
            data = data[len(MARKER):]
        Path(job.destination_path).write_bytes(data)


def age(path: Path, seconds: float = 100) -> None:
    """Move a file's mtime into the past so freshly written artifacts are strictly newer."""
    past = time.time() - seconds
    os.utime(path, (past, past))


def read_x2t_log(log_path: Path) -> list[dict]:
    if not log_path.exists():
        return []
    return [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines() if line.strip()]


# --- 1. files and settings ---

@pytest.fixture
def source_csv(tmp_path: Path) -> Path:
    path = tmp_path / "docs" / "simple.csv"
    path.parent.mkdir(parents=True)
    path.write_text(CSV_CONTENT, encoding="utf-8")
    age(path)
    return path


@pytest.fixture
def x2t_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    log_path = tmp_path / "x2t.log"
    monkeypatch.setenv("FAKE_X2T_LOG", str(log_path))
    for name in ("FAKE_X2T_EXIT", "FAKE_X2T_NO_OUTPUT", "FAKE_X2T_SLEEP"):
        monkeypatch.delenv(name, raising=False)
    return log_path


@pytest.fixture
def fake_command() -> tuple[str, ...]:
    return (sys.executable, str(FAKE_X2T))


@pytest.fixture
def settings(tmp_path: Path, fake_command: tuple[str, ...]) -> Settings:
    return Settings(
        data_dir=str(tmp_path / "data"),
        font_dir=str(tmp_path / "fonts"),
        theme_dir=str(tmp_path / "themes"),
        converter_command=fake_command,
        converter_timeout_sec=30,
        max_upload_mb=1,
    )


# --- 2. service level ---

@pytest.fixture
def recording_converter() -> RecordingConverter:
    return RecordingConverter()


@pytest.fixture
def workspace(settings: Settings) -> LocalWorkspace:
    return LocalWorkspace(settings.data_dir)


@pytest.fixture
def service(workspace: LocalWorkspace, recording_converter: RecordingConverter, settings: Settings) -> ConversionService:
    return ConversionService(
        workspace=workspace,
        converter=recording_converter,
        font_dir=settings.font_dir,
        theme_dir=settings.theme_dir,
    )


@pytest.fixture
def x2t(fake_command: tuple[str, ...]) -> X2TConverter:
    return X2TConverter(fake_command, timeout=30)


# --- 3. application and client ---

@pytest.fixture
def app(settings: Settings, x2t_log: Path) -> FastAPI:
    return create_app(settings)


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

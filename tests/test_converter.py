import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import MARKER, read_x2t_log
from editor_bridge.conversion import (
    ConversionJob,
    ConverterTimeout,
    MissingOutput,
    NonZeroExit,
    SpawnFailure,
)
from editor_bridge.conversion.adapters import X2TConverter, build_descriptor


def _job(tmp_path: Path, source: Path, destination: Path, **kwargs) -> ConversionJob:
    defaults = dict(
        source_path=str(source),
        destination_path=str(destination),
        target_format=8192,
        working_directory=str(tmp_path),
        title=source.name,
        font_directory="/fonts",
        theme_directory="/themes",
    )
    defaults.update(kwargs)
    return ConversionJob(**defaults)


def _fields(xml: str) -> dict[str, ET.Element]:
    root = ET.fromstring(xml.encode("utf-8"))
    return {child.tag: child for child in root}


def _leftovers(directory: Path) -> list[str]:
    return sorted(p.name for p in directory.glob("params_*.xml"))


# --- descriptor ---

def test_descriptor_contains_required_fields(tmp_path):
    job = _job(tmp_path, Path("/input/file.xlsx"), Path("/output/Editor.bin"))
    xml = build_descriptor(job, timestamp=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

    assert xml.startswith('<?xml version="1.0" encoding="utf-8"?>')
    assert "<m_sFileFrom>/input/file.xlsx</m_sFileFrom>" in xml
    assert "<m_sFileTo>/output/Editor.bin</m_sFileTo>" in xml
    assert "<m_sTitle>file.xlsx</m_sTitle>" in xml
    assert "<m_nFormatTo>8192</m_nFormatTo>" in xml
    assert "<m_sFontDir>/fonts</m_sFontDir>" in xml
    assert "<m_sThemeDir>/themes</m_sThemeDir>" in xml
    assert "<m_oTimestamp>2024-01-02T03:04:05Z</m_oTimestamp>" in xml
    assert "<m_nFormatFrom>" not in xml

    fields = _fields(xml)
    options = {child.tag: child.text for child in fields["options"]}
    assert options == {"allowNetworkRequest": "false", "allowPrivateIP": "true"}
    assert fields["m_bPaid"].get("{http://www.w3.org/2001/XMLSchema-instance}nil") == "true"
    assert fields["m_bFromChanges"].text == "false"


def test_descriptor_includes_source_format_when_given(tmp_path):
    job = _job(tmp_path, Path("/input/file.bin"), Path("/output/file.xlsx"), target_format=257, source_format=8192)
    assert "<m_nFormatFrom>8192</m_nFormatFrom>" in build_descriptor(job)


def test_descriptor_escapes_paths(tmp_path):
    job = _job(tmp_path, Path("/input/R&D <draft>.xlsx"), Path("/output/Editor.bin"))
    fields = _fields(build_descriptor(job))
    assert fields["m_sFileFrom"].text == "/input/R&D <draft>.xlsx"


def test_descriptor_without_font_dir_is_nil(tmp_path):
    job = _job(tmp_path, Path("/input/a.docx"), Path("/out/a.bin"), font_directory=None)
    assert '<m_sFontDir xsi:nil="true" />' in build_descriptor(job)


@pytest.mark.parametrize(
    "source, title, destination, target, expected",
    [
        ("/input/simple.csv", "simple.csv", "/work/Editor.tmp", 8192, True),
        ("/input/simple.CSV", "simple.CSV", "/work/Editor.tmp", 8192, True),
        ("/input/simple.csv", "Quarterly", "/work/out.xlsx", 257, True),
        ("/work/temp_changes.bin", "out.csv", "/home/me/out.csv", 260, True),
        ("/work/temp_changes.bin", "out", "/home/me/out.csv", 8192, True),
        ("/input/book.xlsx", "book.xlsx", "/work/Editor.tmp", 8192, False),
        ("/input/book.xlsx", "export.csv", "/work/out.xlsx", 257, False),
        ("/work/temp_changes.bin", "out.xlsx", "/home/me/out.xlsx", 257, False),
    ],
)
def test_csv_options_only_for_csv(tmp_path, source, title, destination, target, expected):
    job = _job(tmp_path, Path(source), Path(destination), title=title, target_format=target)
    xml = build_descriptor(job)
    assert ("<m_nCsvTxtEncoding>46</m_nCsvTxtEncoding>" in xml) is expected
    assert ("<m_nCsvDelimiter>4</m_nCsvDelimiter>" in xml) is expected


# --- process invocation ---

def test_empty_command_rejected():
    with pytest.raises(ValueError):
        X2TConverter(())


@pytest.mark.asyncio
async def test_invoke_success_writes_output_and_cleans_descriptor(tmp_path, x2t, x2t_log, source_csv):
    dest = tmp_path / "Editor.bin"
    await x2t.invoke(_job(tmp_path, source_csv, dest))

    assert dest.read_bytes() == MARKER + source_csv.read_bytes()
    assert _leftovers(tmp_path) == []
    calls = read_x2t_log(x2t_log)
    assert len(calls) == 1
    assert Path(calls[0]["params_path"]).parent == tmp_path
    assert calls[0]["fields"]["m_nCsvTxtEncoding"] == "46"


@pytest.mark.asyncio
async def test_invoke_nonzero_exit(tmp_path, x2t, x2t_log, source_csv, monkeypatch):
    monkeypatch.setenv("FAKE_X2T_EXIT", "3")
    with pytest.raises(NonZeroExit) as exc_info:
        await x2t.invoke(_job(tmp_path, source_csv, tmp_path / "Editor.bin"))
    assert exc_info.value.returncode == 3
    assert "forced failure" in exc_info.value.stderr
    assert _leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_invoke_missing_output(tmp_path, x2t, x2t_log, source_csv, monkeypatch):
    monkeypatch.setenv("FAKE_X2T_NO_OUTPUT", "1")
    dest = tmp_path / "Editor.bin"
    with pytest.raises(MissingOutput) as exc_info:
        await x2t.invoke(_job(tmp_path, source_csv, dest))
    assert exc_info.value.destination == str(dest)
    assert _leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_invoke_spawn_failure(tmp_path, source_csv):
    converter = X2TConverter((str(tmp_path / "missing" / "x2t"),))
    with pytest.raises(SpawnFailure):
        await converter.invoke(_job(tmp_path, source_csv, tmp_path / "Editor.bin"))
    assert _leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_invoke_timeout_kills_converter(tmp_path, fake_command, x2t_log, source_csv, monkeypatch):
    monkeypatch.setenv("FAKE_X2T_SLEEP", "10")
    converter = X2TConverter(fake_command, timeout=0.5)
    dest = tmp_path / "Editor.bin"
    with pytest.raises(ConverterTimeout):
        await converter.invoke(_job(tmp_path, source_csv, dest))
    assert not dest.exists()
    assert _leftovers(tmp_path) == []

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class FormatInfo:
    code: int
    name: str


@dataclass(frozen=True)
class ConversionJob:
    """One converter run: ``source_path`` -> ``destination_path``.

    ``working_directory`` holds every transient file of the run (descriptor,
    temp binaries); the converter also resolves ``media/`` relative to it.
    """

    source_path: str
    destination_path: str
    target_format: int
    working_directory: str
    title: str
    source_format: int | None = None
    key: str = "api_conversion"
    font_directory: str | None = None
    theme_directory: str | None = None


class ConverterGateway(Protocol):
    async def invoke(self, job: ConversionJob) -> None:
        """Run the converter for ``job``; raise ConverterError on failure."""


class WorkspaceGateway(Protocol):
    def working_dir(self, fingerprint: str) -> str:
        ...

    def artifact_path(self, fingerprint: str) -> str:
        ...

    def media_dir(self, fingerprint: str) -> str:
        ...

    def fallback_dir(self) -> str:
        ...

    def converted_dir(self) -> str:
        ...


@dataclass(frozen=True)
class ConvertResult:
    data: bytes
    fingerprint: str
    cache_hit: bool
    timings: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class SaveResult:
    path: str
    size: int
    converted: bool

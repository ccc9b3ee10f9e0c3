"""
Domain layer for the editor conversion pipeline.
Provides the format registry, path fingerprinting, the x2t gateway and the
service that caches conversions and round-trips saves, so front-ends (HTTP or
others) share the same core logic.
"""

from .errors import (
    BridgeError,
    ConverterError,
    ConverterTimeout,
    InvalidFingerprint,
    InvalidPath,
    MissingOutput,
    NonZeroExit,
    SaveError,
    SourceNotFound,
    SpawnFailure,
    UnsupportedFormat,
)
from .interfaces import ConversionJob, ConverterGateway, ConvertResult, FormatInfo, SaveResult, WorkspaceGateway
from .service import ConversionService

class BridgeError(Exception):
    """Base class for failures surfaced by the conversion pipeline."""

    code = "internal_error"


class SourceNotFound(BridgeError):
    code = "not_found"

    def __init__(self, path: str) -> None:
        super().__init__(f"file not found at absolute path: {path}")
        self.path = path


class InvalidPath(BridgeError):
    code = "invalid_path"

    def __init__(self, path: str | None) -> None:
        super().__init__("filepath must be an absolute path")
        self.path = path


class UnsupportedFormat(BridgeError):
    code = "unsupported_format"

    def __init__(self, ext: str) -> None:
        super().__init__(f"unsupported file format: {ext or '(none)'}")
        self.ext = ext


class ConverterError(BridgeError):
    """The external converter could not produce the requested artifact."""

    code = "conversion_failed"


class SpawnFailure(ConverterError):
    def __init__(self, executable: str, cause: OSError) -> None:
        super().__init__(f"failed to start converter {executable}: {cause}")
        self.executable = executable


class NonZeroExit(ConverterError):
    def __init__(self, returncode: int, stderr: str) -> None:
        super().__init__(f"converter exited with code {returncode}: {stderr.strip()[:500]}")
        self.returncode = returncode
        self.stderr = stderr


class MissingOutput(ConverterError):
    def __init__(self, destination: str) -> None:
        super().__init__(f"converter reported success but did not create {destination}")
        self.destination = destination


class ConverterTimeout(ConverterError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"converter did not finish within {timeout:g}s")
        self.timeout = timeout


class SaveError(BridgeError):
    """Save failed after validation; ``__cause__`` holds the underlying error."""

    code = "save_failed"


class InvalidFingerprint(BridgeError):
    code = "invalid_filehash"

    def __init__(self, value: str | None) -> None:
        super().__init__("filehash must be a 32 character lowercase hex string")
        self.value = value

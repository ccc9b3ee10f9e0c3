import os
from dataclasses import dataclass
from pathlib import Path


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _resolve_dir(value: str) -> str:
    return str(Path(value).expanduser().resolve())


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once from the environment."""

    data_dir: str
    font_dir: str
    theme_dir: str
    converter_command: tuple[str, ...]
    converter_timeout_sec: float = 300.0
    max_upload_mb: int = 2048
    editor_loader_path: str = "/offline-loader-proper.html"
    host: str = "127.0.0.1"
    port: int = 38123
    reload: bool = False

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=_resolve_dir(os.getenv("DATA_DIR", "./data")),
            # Must be the directory holding the AllFonts.js served to the browser
            # so x2t assigns the font ids the editor expects.
            font_dir=_resolve_dir(os.getenv("FONT_DATA_DIR", "./fonts")),
            theme_dir=_resolve_dir(os.getenv("THEME_DIR", "./editors/sdkjs/slide/themes")),
            converter_command=(_resolve_dir(os.getenv("CONVERTER_PATH", "./converter/x2t")),),
            converter_timeout_sec=float(os.getenv("CONVERTER_TIMEOUT_SEC", "300")),
            max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "2048")),
            editor_loader_path=os.getenv("EDITOR_LOADER_PATH", "/offline-loader-proper.html"),
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "38123")),
            reload=_env_flag("RELOAD"),
        )

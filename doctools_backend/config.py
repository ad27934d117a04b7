from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path


# Upload type filter. Clients sometimes label files as octet-stream, so the
# extension list is consulted as a fallback.
ALLOWED_CONTENT_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.oasis.opendocument.text",
    "application/vnd.oasis.opendocument.spreadsheet",
    "image/jpeg",
    "image/png",
    "text/html",
}
ALLOWED_EXTENSIONS = {
    ".pdf",
    ".doc",
    ".docx",
    ".xls",
    ".xlsx",
    ".odt",
    ".ods",
    ".jpg",
    ".jpeg",
    ".png",
    ".html",
    ".htm",
}

UPLOAD_CHUNK_BYTES = 1024 * 1024

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_path(name: str, default: Path) -> Path:
    raw = os.environ.get(name)
    if raw and raw.strip():
        return Path(raw).expanduser()
    return default


@dataclass(slots=True)
class Settings:
    """Runtime settings for the session/job core and the HTTP surface."""

    uploads_root: Path = Path("uploads")
    max_upload_bytes: int = 100 * 1024 * 1024
    session_timeout_seconds: float = 3600.0
    # Terminal sessions that were never downloaded live this many timeouts.
    terminal_retention_factor: float = 2.0
    cleanup_interval_seconds: float | None = None
    tool_timeout_seconds: float = 300.0
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    binaries: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.uploads_root = Path(self.uploads_root).resolve()
        if self.cleanup_interval_seconds is None:
            self.cleanup_interval_seconds = self.session_timeout_seconds / 2

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from DOCTOOLS_* environment variables."""

        timeout = _env_float("DOCTOOLS_SESSION_TIMEOUT_SECONDS", 3600.0)
        interval_raw = os.environ.get("DOCTOOLS_CLEANUP_INTERVAL_SECONDS")
        origins_raw = os.environ.get("DOCTOOLS_CORS_ORIGINS", "*")
        origins = tuple(o.strip() for o in origins_raw.split(",") if o.strip()) or ("*",)

        binaries: dict[str, str] = {}
        for name, env_name in (
            ("qpdf", "DOCTOOLS_QPDF_BIN"),
            ("gs", "DOCTOOLS_GS_BIN"),
            ("soffice", "DOCTOOLS_SOFFICE_BIN"),
            ("magick", "DOCTOOLS_MAGICK_BIN"),
        ):
            value = os.environ.get(env_name)
            if value and value.strip():
                binaries[name] = value.strip()

        return cls(
            uploads_root=_env_path("DOCTOOLS_UPLOADS_ROOT", Path.cwd() / "uploads"),
            max_upload_bytes=int(os.environ.get("DOCTOOLS_MAX_UPLOAD_BYTES", str(100 * 1024 * 1024))),
            session_timeout_seconds=timeout,
            terminal_retention_factor=_env_float("DOCTOOLS_TERMINAL_RETENTION_FACTOR", 2.0),
            cleanup_interval_seconds=float(interval_raw) if interval_raw and interval_raw.strip() else None,
            tool_timeout_seconds=_env_float("DOCTOOLS_TOOL_TIMEOUT_SECONDS", 300.0),
            cors_origins=origins,
            log_level=os.environ.get("DOCTOOLS_LOG_LEVEL", "INFO").upper(),
            binaries=binaries,
        )


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stream handler to the package logger.

    Safe to call more than once (e.g. one app per test).
    """
    logger = logging.getLogger("doctools_backend")
    logger.setLevel(level)
    if not any(getattr(h, "_doctools", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._doctools = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

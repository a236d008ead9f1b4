"""
Runtime settings.

All values can be overridden through environment variables; see
``Settings.from_env``.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from errors import ConfigurationError

DEFAULT_HOME = Path(os.path.expanduser("~/.shieldshare"))
SUPPORTED_CIPHERS = ("aes-256-ctr", "aes-256-gcm")


@dataclass
class Settings:
    """Configuration for a ShieldShare deployment.

    Attributes:
        data_dir: Root directory for the database and blobs
        db_path: SQLite database file
        blob_dir: Directory holding encrypted blobs
        storage_quota: Default per-subject quota in bytes
        cipher_algorithm: Codec used for new objects
        chunk_size: Streaming chunk size in bytes
        storage_timeout: Seconds to wait on a locked database before failing
        sweep_interval: Seconds between expiry/orphan sweeps
        purge_interval: Seconds between purges of soft-deleted objects
        sweep_initial_delay: Seconds before the first sweep after start
        orphan_grace_seconds: Objects younger than this are never reclaimed
        default_download_limit: Limit for 'multiple' grants when unspecified
        default_expiry_hours: Grant lifetime when unspecified
        max_download_limit: Upper bound for 'multiple' grant limits
        frontend_url: Base URL used to build share links
        log_level: Root log level used by the CLI
    """
    data_dir: Path = DEFAULT_HOME
    db_path: Path = None
    blob_dir: Path = None
    storage_quota: int = 1073741824
    cipher_algorithm: str = "aes-256-ctr"
    chunk_size: int = 64 * 1024
    storage_timeout: float = 5.0
    sweep_interval: float = 3600.0
    purge_interval: float = 3600.0
    sweep_initial_delay: float = 5.0
    orphan_grace_seconds: float = 0.0
    default_download_limit: int = 10
    default_expiry_hours: float = 24.0
    max_download_limit: int = 1000
    frontend_url: str = "http://localhost:5173"
    log_level: str = field(default="INFO")

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()
        if self.db_path is None:
            self.db_path = self.data_dir / "shieldshare.db"
        if self.blob_dir is None:
            self.blob_dir = self.data_dir / "encrypted"
        self.db_path = Path(self.db_path).expanduser()
        self.blob_dir = Path(self.blob_dir).expanduser()
        self.validate()

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        env = os.environ
        try:
            return cls(
                data_dir=Path(env.get("SHIELDSHARE_HOME", str(DEFAULT_HOME))),
                db_path=env.get("SHIELDSHARE_DB") or None,
                blob_dir=env.get("SHIELDSHARE_BLOB_DIR") or None,
                storage_quota=int(env.get("STORAGE_QUOTA_PER_USER", "1073741824")),
                cipher_algorithm=env.get("ENCRYPTION_ALGORITHM", "aes-256-ctr").lower(),
                chunk_size=int(env.get("SHIELDSHARE_CHUNK_SIZE", str(64 * 1024))),
                storage_timeout=float(env.get("SHIELDSHARE_STORAGE_TIMEOUT", "5.0")),
                sweep_interval=float(env.get("CLEANUP_INTERVAL_SECONDS", "3600")),
                purge_interval=float(env.get("PURGE_INTERVAL_SECONDS", "3600")),
                sweep_initial_delay=float(env.get("CLEANUP_INITIAL_DELAY", "5")),
                orphan_grace_seconds=float(env.get("ORPHAN_GRACE_SECONDS", "0")),
                default_download_limit=int(env.get("DEFAULT_DOWNLOAD_LIMIT", "10")),
                default_expiry_hours=float(env.get("DEFAULT_EXPIRY_HOURS", "24")),
                max_download_limit=int(env.get("MAX_DOWNLOAD_LIMIT", "1000")),
                frontend_url=env.get("FRONTEND_URL", "http://localhost:5173"),
                log_level=env.get("SHIELDSHARE_LOG_LEVEL", "INFO").upper(),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment setting: {e}", cause=e)

    def validate(self) -> None:
        if self.cipher_algorithm not in SUPPORTED_CIPHERS:
            raise ConfigurationError(
                f"Unsupported cipher '{self.cipher_algorithm}'",
                details={"supported": list(SUPPORTED_CIPHERS)},
            )
        for name in ("chunk_size", "storage_timeout", "sweep_interval",
                     "purge_interval", "storage_quota", "max_download_limit"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.sweep_initial_delay < 0 or self.orphan_grace_seconds < 0:
            raise ConfigurationError("delays must not be negative")
        if not 1 <= self.default_download_limit <= self.max_download_limit:
            raise ConfigurationError("default_download_limit out of range")

    def ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.blob_dir.mkdir(parents=True, exist_ok=True)

"""Configuration settings for the content-addressed blob server."""

import math
import os
from dataclasses import dataclass
from pathlib import Path

GIB = 1024 * 1024 * 1024

# Storage limits (GiB)
DEFAULT_MAX_STORAGE_GB = 20.0
DEFAULT_MAX_UPLOAD_GB = 2.0

# Listener
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080

# Directory paths
DEFAULT_BLOB_PATH = "/home/sht2"

# Quota file, kept in the storage root and never counted as stored data
CONFIG_FILENAME = ".sht2"

# Staging area for in-flight uploads, kept under the root so publish is a rename
STAGING_DIRNAME = ".staging"
STAGING_PREFIX = "up-"


class ConfigError(Exception):
    """Raised when the persisted quota configuration cannot be used."""


@dataclass(frozen=True)
class QuotaConfig:
    max_storage_bytes: int
    max_upload_bytes: int

    @classmethod
    def from_gib(cls, storage_gb: float, upload_gb: float) -> "QuotaConfig":
        return cls(
            max_storage_bytes=int(storage_gb * GIB),
            max_upload_bytes=int(upload_gb * GIB),
        )

    @property
    def max_storage_gb(self) -> float:
        return self.max_storage_bytes / GIB

    @property
    def max_upload_gb(self) -> float:
        return self.max_upload_bytes / GIB


@dataclass(frozen=True)
class Settings:
    blob_path: Path
    host: str
    port: int

    @classmethod
    def from_env(cls) -> "Settings":
        port = os.getenv("PORT") or str(DEFAULT_PORT)
        try:
            port_value = int(port)
        except ValueError:
            raise ConfigError(f"invalid PORT {port!r}")
        return cls(
            blob_path=Path(os.getenv("BLOB_PATH") or DEFAULT_BLOB_PATH),
            host=os.getenv("HOST") or DEFAULT_HOST,
            port=port_value,
        )


def default_quota_config() -> QuotaConfig:
    return QuotaConfig.from_gib(DEFAULT_MAX_STORAGE_GB, DEFAULT_MAX_UPLOAD_GB)


def write_default_config(path: Path, cfg: QuotaConfig):
    """Write the quota file with the values of `cfg`, in whole GiB."""
    with open(path, "w") as f:
        f.write("# sht2 storage configuration (values are in GiB)\n")
        f.write(f"MAX_STORAGE_GB={cfg.max_storage_gb:.0f}\n")
        f.write(f"MAX_UPLOAD_GB={cfg.max_upload_gb:.0f}\n")


def parse_quota_config(text: str, source: str = CONFIG_FILENAME) -> QuotaConfig:
    """Parse ``KEY=VALUE`` quota lines on top of the defaults.

    Blank lines, ``#`` comments and lines without ``=`` are skipped. Every
    value has to be a positive, finite number of GiB, including values of
    keys that are not otherwise used.
    """
    storage_gb = DEFAULT_MAX_STORAGE_GB
    upload_gb = DEFAULT_MAX_UPLOAD_GB

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        try:
            gb = float(value)
        except ValueError:
            raise ConfigError(f"invalid {key} in {source}")
        if not math.isfinite(gb) or gb <= 0:
            raise ConfigError(f"invalid {key} in {source}")

        if key == "MAX_STORAGE_GB":
            storage_gb = gb
        elif key == "MAX_UPLOAD_GB":
            upload_gb = gb

    return QuotaConfig.from_gib(storage_gb, upload_gb)


def load_quota_config(root: Path) -> QuotaConfig:
    """Load the quota file from `root`, creating it with defaults on first run."""
    path = Path(root) / CONFIG_FILENAME
    if not path.exists():
        cfg = default_quota_config()
        write_default_config(path, cfg)
        return cfg

    with open(path, "r") as f:
        return parse_quota_config(f.read(), str(path))

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_path(name: str, default: Path) -> Path:
    raw = os.environ.get(name)
    return Path(raw).expanduser() if raw else default


_DEFAULT_DATA_DIR = Path.home() / ".trellis"


@dataclass(frozen=True)
class Settings:
    """Process-level settings for the memory engine.

    Storage and logging locations only; engine tuning lives in
    trellis.config.MemoryConfig.
    """

    data_dir: Path = _env_path("TRELLIS_DATA_DIR", _DEFAULT_DATA_DIR)
    log_path: Path = _env_path("TRELLIS_LOG_PATH", data_dir / "trellis.log")
    log_level: str = os.environ.get("TRELLIS_LOG_LEVEL", "INFO")
    log_max_bytes: int = int(os.environ.get("TRELLIS_LOG_MAX_BYTES", str(1_000_000)))
    log_backup_count: int = int(os.environ.get("TRELLIS_LOG_BACKUP_COUNT", "3"))

    @property
    def default_sqlite_path(self) -> Path:
        return self.data_dir / "trellis.db"


settings = Settings()

"""
Persistent application settings for seaterm.
Stored in ~/.seaterm/config.json
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default config location
DEFAULT_CONFIG_DIR = Path.home() / ".seaterm"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"


@dataclass
class AppSettings:
    """
    Application settings that persist across sessions.
    """
    # Remote pseudo-terminal
    term_type: str = "xterm-256color"
    term_cols: int = 80
    term_rows: int = 24

    # Connection defaults
    default_port: int = 22
    connect_timeout: float = 10.0
    auth_timeout: float = 30.0
    keepalive_interval: int = 30

    # Remote command limits (seconds)
    exec_timeout: float = 60.0
    stream_timeout: float = 300.0

    # How long "ssh user@host" waits for ssh-login before it goes stale
    pending_connection_ttl: float = 300.0

    # Base for relative local paths in sftp-get / sftp-put / ssh-key.
    # Empty means the process working directory.
    local_root: str = ""

    # Console
    history_size: int = 500

    def to_dict(self) -> dict:
        """Serialize to dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> AppSettings:
        """Deserialize from dict, ignoring unknown keys."""
        valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)

    def resolve_local_root(self) -> Path:
        """Directory that relative local paths are resolved against."""
        if self.local_root:
            return Path(self.local_root).expanduser()
        return Path.cwd()


class SettingsManager:
    """
    Reads AppSettings from a JSON file and writes them back.

    A missing or unreadable file yields defaults. Nothing is written until
    save() is called.

    Usage:
        manager = SettingsManager()
        manager.update(local_root="~/transfers", exec_timeout=120)
        manager.save()
    """

    def __init__(self, config_path: Path = None):
        self.config_path = Path(config_path) if config_path else DEFAULT_CONFIG_FILE
        self._settings: Optional[AppSettings] = None

    @property
    def settings(self) -> AppSettings:
        """Current settings, read from disk on first access."""
        if self._settings is None:
            self._settings = self.load()
        return self._settings

    def load(self) -> AppSettings:
        try:
            raw = self.config_path.read_text()
        except FileNotFoundError:
            logger.debug(f"No settings at {self.config_path}, using defaults")
            return AppSettings()
        except OSError as e:
            logger.warning(f"Cannot read {self.config_path}: {e}, using defaults")
            return AppSettings()

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")
            settings = AppSettings.from_dict(data)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Failed to load settings from {self.config_path}: {e}, using defaults")
            return AppSettings()

        logger.debug(f"Loaded settings from {self.config_path}")
        return settings

    def update(self, **changes) -> AppSettings:
        """Change named fields of the current settings. Unknown names raise KeyError."""
        settings = self.settings
        for name, value in changes.items():
            if name not in AppSettings.__dataclass_fields__:
                raise KeyError(f"Unknown setting: {name}")
            setattr(settings, name, value)
        return settings

    def save(self) -> bool:
        """Write the current settings. False if the file could not be written."""
        text = json.dumps(self.settings.to_dict(), indent=2, sort_keys=True) + "\n"
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(text)
        except OSError as e:
            logger.error(f"Failed to save settings to {self.config_path}: {e}")
            return False
        logger.info(f"Saved settings to {self.config_path}")
        return True

    def reset(self) -> AppSettings:
        """Back to defaults; call save() to persist."""
        self._settings = AppSettings()
        return self._settings

"""File path resolution using platformdirs.

Paths use platform-appropriate per-user directories:
  macOS: ~/Library/Application Support/kbchat/
  Linux: ~/.local/share/kbchat/
  Windows: %LOCALAPPDATA%/kbchat/
"""

from pathlib import Path

import platformdirs

APP_NAME = "kbchat"


def get_data_dir() -> Path:
    """Return the directory for persistent client state."""
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_log_dir() -> Path:
    """Return the directory for client logs."""
    return Path(platformdirs.user_log_dir(APP_NAME, appauthor=False))


def get_default_credentials_path() -> Path:
    """Return the default credential store file path."""
    return get_data_dir() / "credentials.json"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    for d in [get_data_dir(), get_log_dir()]:
        d.mkdir(parents=True, exist_ok=True)

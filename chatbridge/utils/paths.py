"""File path resolution using platformdirs.

Persistent data (the SQLite database and the generated credential key)
lives in the platform user data directory:
  macOS: ~/Library/Application Support/chatbridge/
  Linux: ~/.local/share/chatbridge/
  Windows: %LOCALAPPDATA%/chatbridge/
"""

from pathlib import Path

import platformdirs

APP_NAME = "chatbridge"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, key file)."""
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False, ensure_exists=True))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "chatbridge.db"

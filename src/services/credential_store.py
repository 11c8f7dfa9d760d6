"""Durable credential storage observable across processes.

Holds exactly three string entries (access token, renewal token and
absolute expiry in epoch milliseconds), mirroring a browser's
localStorage namespace. Writes replace the backing file atomically so
another kbchat process never reads a half-written record.

External mutation (another process signing in, renewing or signing
out) is detected with the watchdog library. Observer-thread events are
bridged to the asyncio loop via call_soon_threadsafe, and listeners
receive one StorageChange per key whose value actually differs. Writes
made through this instance never notify its own listeners.

At rest the tokens are plain JSON protected only by owner-only file
permissions (0600) and the user's home directory. An OS keyring would
keep them encrypted, but it reports no change events, and other
processes must see sign-in, renewal and sign-out as they happen. Anyone
able to read the user's files can read the tokens.
"""

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
EXPIRES_AT_KEY = "token_expires_at"

CREDENTIAL_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, EXPIRES_AT_KEY)


@dataclass(frozen=True)
class StorageChange:
    """One key changed by someone other than this store instance."""

    key: str
    old_value: str | None
    new_value: str | None


@dataclass(frozen=True)
class CredentialRecord:
    """A complete, parsed credential record."""

    access_token: str
    refresh_token: str
    expires_at_ms: int


StorageListener = Callable[[StorageChange], None]


class CredentialStore:
    """In-memory credential store; base class for durable backends.

    Pure storage: no expiry logic lives here. The session token
    manager is the only component that writes to it.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._listeners: list[StorageListener] = []

    def get(self, key: str) -> str | None:
        """Return the stored value for key, or None."""
        return self._data.get(key)

    def get_expires_at_ms(self) -> int | None:
        """Return the expiry timestamp, or None if missing or malformed."""
        raw = self.get(EXPIRES_AT_KEY)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def read_record(self) -> CredentialRecord | None:
        """Return the full record, or None if any entry is absent."""
        access = self.get(ACCESS_TOKEN_KEY)
        refresh = self.get(REFRESH_TOKEN_KEY)
        expires_at = self.get_expires_at_ms()
        if not access or not refresh or expires_at is None:
            return None
        return CredentialRecord(access, refresh, expires_at)

    def set_tokens(self, access_token: str, refresh_token: str, expires_at_ms: int) -> None:
        """Overwrite all three entries in one write."""
        self._data = {
            ACCESS_TOKEN_KEY: access_token,
            REFRESH_TOKEN_KEY: refresh_token,
            EXPIRES_AT_KEY: str(expires_at_ms),
        }
        self._persist()

    def clear(self) -> None:
        """Remove all entries."""
        self._data = {}
        self._persist()

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """Register a listener for external changes.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def start(self) -> None:
        """Begin observing external changes. No-op for memory stores."""

    async def stop(self) -> None:
        """Stop observing external changes."""

    def _persist(self) -> None:
        """Write current data to the backing medium. No-op in memory."""

    def _apply_external(self, new_data: dict[str, str]) -> list[StorageChange]:
        """Adopt data written elsewhere and notify listeners of differences."""
        changes = [
            StorageChange(key, self._data.get(key), new_data.get(key))
            for key in CREDENTIAL_KEYS
            if self._data.get(key) != new_data.get(key)
        ]
        self._data = {k: v for k, v in new_data.items() if k in CREDENTIAL_KEYS}
        for change in changes:
            logger.debug("External credential change: %s", change.key)
            for listener in list(self._listeners):
                try:
                    listener(change)
                except Exception:
                    logger.exception("Credential store listener failed for %s", change.key)
        return changes


class _StoreFileHandler(FileSystemEventHandler):
    """Forwards events for one file to the asyncio loop.

    Runs on the watchdog observer thread; ALL loop interaction goes
    through call_soon_threadsafe.
    """

    def __init__(self, path: Path, loop: asyncio.AbstractEventLoop, callback: Callable[[], object]):
        self._path = str(path)
        self._loop = loop
        self._callback = callback

    def on_any_event(self, event):
        if event.is_directory:
            return
        paths = {event.src_path, getattr(event, "dest_path", "")}
        if self._path in paths:
            self._loop.call_soon_threadsafe(self._callback)


class FileCredentialStore(CredentialStore):
    """Credential store persisted as a JSON file readable by every process."""

    def __init__(self, path: Path | str) -> None:
        super().__init__()
        self._path = Path(path).expanduser().resolve()
        self._observer: Observer | None = None
        self._data = self._read_file() or {}

    @property
    def path(self) -> Path:
        """Location of the backing file."""
        return self._path

    def _read_file(self) -> dict[str, str] | None:
        """Read the backing file.

        Returns:
            Parsed entries ({} when the file is absent), or None when the
            file exists but cannot be parsed.
        """
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable credential file %s: %s", self._path, exc)
            return None
        if not isinstance(raw, dict):
            logger.warning("Ignoring credential file %s: not a JSON object", self._path)
            return None
        return {k: str(v) for k, v in raw.items() if k in CREDENTIAL_KEYS and v is not None}

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".credentials-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def reload(self) -> list[StorageChange]:
        """Re-read the file and notify listeners of external changes.

        Returns:
            The changes detected (empty when the file matches memory).
        """
        new_data = self._read_file()
        if new_data is None:
            return []
        return self._apply_external(new_data)

    async def start(self) -> None:
        """Watch the credential file's directory for external writes."""
        if self._observer is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        loop = asyncio.get_running_loop()
        handler = _StoreFileHandler(self._path, loop, self.reload)
        self._observer = Observer()
        self._observer.schedule(handler, str(self._path.parent), recursive=False)
        self._observer.daemon = True
        self._observer.start()
        logger.debug("Watching credential file %s", self._path)

    async def stop(self) -> None:
        """Stop the filesystem observer."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

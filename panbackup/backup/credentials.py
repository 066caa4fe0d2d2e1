"""
Credential persistence and caching for upload backends.

CredentialStore keeps one backend's credential state in a small JSON file,
written atomically (temp file + rename) so a crash never leaves a torn
record. CredentialCache wraps a store with the lazy load / refresh /
re-authenticate logic shared by all backends; subclasses supply the
backend-specific authentication flows.
"""

import os
import json
import logging
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when the credential store cannot be read or written."""
    pass


class AuthenticationError(Exception):
    """Raised when a backend's authentication flow fails."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CredentialStore:
    """
    JSON file holding one backend's credential state.
    """

    def __init__(self, path: str):
        self.path = Path(path).expanduser()

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Load persisted state.

        Returns:
            Stored dict, or None if no file exists

        Raises:
            PersistenceError: If the file is unreadable or not a JSON object
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read credential file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(f"Credential file {self.path} does not contain an object")
        return data

    def save(self, data: Dict[str, Any]):
        """
        Atomically replace the persisted state.

        Raises:
            PersistenceError: If the file cannot be written
        """
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix='.tmp', dir=str(self.path.parent)
            )
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write credential file {self.path}: {e}") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    logger.warning(f"Could not remove temporary credential file: {tmp_path}")

    def clear(self):
        """Remove the persisted state if present."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(f"Failed to remove credential file {self.path}: {e}") from e


class CredentialCache:
    """
    Lazily loaded, persisted credential for one backend account.

    get_valid_credential() and invalidate() are serialized by a lock, so
    concurrent callers never refresh independently: the first one refreshes
    and the others reuse its result.

    Subclasses implement:
        _from_state(dict) -> credential
        _to_state(credential) -> dict
        _is_valid(credential) -> bool
        _authenticate() -> credential          (full, possibly interactive flow)
        _refresh(credential) -> credential     (cheaper renewal, may raise)
        _without_access(credential) -> credential or None
    """

    name = 'backend'

    def __init__(self, store: CredentialStore):
        self.store = store
        self._lock = threading.Lock()
        self._loaded = False
        self._credential = None

    def get_valid_credential(self):
        """
        Return a usable credential, loading/refreshing/authenticating as needed.

        Returns:
            Backend-specific credential object

        Raises:
            AuthenticationError: If no credential can be obtained
        """
        with self._lock:
            if not self._loaded:
                self._credential = self._load()
                self._loaded = True

            credential = self._credential

            if credential is not None and self._is_valid(credential):
                return credential

            if credential is None:
                logger.info(f"[{self.name}] No cached credential found, starting authentication")
                credential = self._authenticate()
            else:
                logger.info(f"[{self.name}] Cached credential expired, refreshing")
                try:
                    credential = self._refresh(credential)
                except AuthenticationError as e:
                    logger.warning(f"[{self.name}] Refresh failed ({e}), falling back to full authentication")
                    credential = self._authenticate()

            self._set(credential)
            return credential

    def invalidate(self, rejected=None):
        """
        Mark the current credential as unusable.

        Args:
            rejected: The credential a backend just rejected. If another caller
                has already replaced it, nothing happens.
        """
        with self._lock:
            if rejected is not None and rejected is not self._credential:
                logger.debug(f"[{self.name}] Credential already replaced, skipping invalidation")
                return

            logger.info(f"[{self.name}] Invalidating cached credential")
            if self._credential is not None:
                self._set(self._without_access(self._credential))
            self._loaded = True

    def _load(self):
        try:
            state = self.store.load()
        except PersistenceError as e:
            logger.warning(f"[{self.name}] {e}; a fresh authentication will be performed")
            return None

        if state is None:
            return None

        try:
            credential = self._from_state(state)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[{self.name}] Ignoring malformed credential state: {e}")
            return None

        logger.info(f"[{self.name}] Loaded cached credential from {self.store.path}")
        return credential

    def _set(self, credential):
        self._credential = credential
        try:
            if credential is None:
                self.store.clear()
            else:
                self.store.save(self._to_state(credential))
        except PersistenceError as e:
            logger.error(f"[{self.name}] {e}; the next run will need to authenticate again")

    def _from_state(self, state: Dict[str, Any]):
        raise NotImplementedError

    def _to_state(self, credential) -> Dict[str, Any]:
        raise NotImplementedError

    def _is_valid(self, credential) -> bool:
        raise NotImplementedError

    def _authenticate(self):
        raise NotImplementedError

    def _refresh(self, credential):
        raise NotImplementedError

    def _without_access(self, credential):
        return None

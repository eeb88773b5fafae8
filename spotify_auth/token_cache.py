import json
import logging
import os
import stat
import tempfile
import threading
from typing import Any, Callable, Dict, Optional

from .manager import AuthorizationManager

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_CACHE_PATH = os.path.join("data", "spotify_auth.json")


class TokenCache:
    """JSON file cache for an AuthorizationManager snapshot.

    The file holds ``AuthorizationManager.to_dict()``; secrets are left out
    unless ``include_secrets`` is set. Files are chmod 0600.

    Writes go to a fresh temp file in the same directory and are moved into
    place; saves and clears from different threads are serialized.
    """

    def __init__(self, cache_path: str = DEFAULT_TOKEN_CACHE_PATH, *, include_secrets: bool = False):
        self.cache_path = cache_path
        self.include_secrets = include_secrets
        self._lock = threading.RLock()

    def ensure_cache_dir(self) -> None:
        directory = os.path.dirname(self.cache_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def exists(self) -> bool:
        return os.path.exists(self.cache_path)

    def read(self) -> Optional[Dict[str, Any]]:
        """Return the raw cached snapshot, or None when there is none."""

        if not self.exists():
            return None

        try:
            with open(self.cache_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable token cache %s: %s", self.cache_path, e)
            return None

        if not isinstance(data, dict):
            logger.warning("Ignoring token cache %s: not a JSON object", self.cache_path)
            return None
        return data

    def load(self, **kwargs) -> Optional[AuthorizationManager]:
        """Rebuild a manager from the cache.

        Keyword arguments (``transport``, ``client_secret``,
        ``refresh_margin`` ...) go to ``AuthorizationManager.from_dict``.
        """

        data = self.read()
        if data is None:
            return None

        try:
            return AuthorizationManager.from_dict(data, **kwargs)
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring invalid token cache %s: %s", self.cache_path, e)
            return None

    def save(self, manager: AuthorizationManager) -> None:
        with self._lock:
            self.ensure_cache_dir()
            fd, tmp_path = tempfile.mkstemp(
                prefix=".spotify_auth.",
                suffix=".tmp",
                dir=os.path.dirname(self.cache_path) or ".",
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(manager.to_dict(include_secrets=self.include_secrets), f, indent=2, sort_keys=True)
                os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)
                os.replace(tmp_path, self.cache_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        logger.debug("Saved authorization state to %s", self.cache_path)

    def clear(self) -> bool:
        with self._lock:
            if not os.path.exists(self.cache_path):
                return False
            os.remove(self.cache_path)
        logger.info("Removed token cache %s", self.cache_path)
        return True

    def attach(self, manager: AuthorizationManager) -> Callable[[], None]:
        """Persist ``manager`` on every change; returns the detach function.

        Deauthorization removes the cache file instead of writing an empty
        snapshot.
        """

        def on_change() -> None:
            # State is read under the cache lock so the last write reflects the latest install.
            with self._lock:
                if manager.is_authorized():
                    self.save(manager)
                else:
                    self.clear()

        return manager.add_listener(on_change)

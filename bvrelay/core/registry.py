from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

from .proto import normalize_identity

if TYPE_CHECKING:
    from .connection import Connection

log = logging.getLogger("bvrelay.registry")


class Registry:
    """Maps a normalised identity to the connection currently bound to it.

    Last register wins: binding an identity that is already taken silently
    displaces the older connection, which stays open but is no longer
    reachable by lookup. Removal on close matches the connection object, not
    the identity string, so a displaced connection closing late never drops
    the binding that replaced it.

    One lock guards one dict. Nothing under the lock does I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, "Connection"] = {}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def bind(self, identity: str, connection: "Connection") -> Optional["Connection"]:
        key = normalize_identity(identity)
        with self._lock:
            previous = self._entries.get(key)
            self._entries[key] = connection
        if previous is not None and previous is not connection:
            log.info("Identity %s rebound, previous connection %s orphaned", key, previous.remote)
            return previous
        return None

    def unbind(self, connection: "Connection") -> List[str]:
        with self._lock:
            removed = [key for key, conn in self._entries.items() if conn is connection]
            for key in removed:
                del self._entries[key]
        return removed

    def release(self, identity: str, connection: "Connection") -> bool:
        """Drop ``identity`` only if it still points at ``connection``."""

        key = normalize_identity(identity)
        with self._lock:
            if self._entries.get(key) is connection:
                del self._entries[key]
                return True
        return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def lookup(self, identity: str) -> Optional["Connection"]:
        key = normalize_identity(identity)
        with self._lock:
            conn = self._entries.get(key)
        if conn is None or not conn.is_open:
            return None
        return conn

    def identities(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, identity: object) -> bool:
        if not isinstance(identity, str):
            return False
        with self._lock:
            return normalize_identity(identity) in self._entries


__all__ = ["Registry"]

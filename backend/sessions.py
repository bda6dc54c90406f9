import hmac
import logging
from typing import Dict, Optional, Tuple

from fastapi import WebSocket

from errors import IdentityConflict

logger = logging.getLogger(__name__)

FRESH = "fresh"
RECONNECT = "reconnect"


class Session:
    """One live connection and, once it has joined, the identity it claims."""

    def __init__(self, connection_id: str, websocket: WebSocket):
        self.connection_id = connection_id
        self.websocket = websocket
        self.identifier: Optional[str] = None
        self.key: Optional[str] = None
        self.name: Optional[str] = None
        self.room_code: Optional[str] = None
        self.msg_timestamps: list = []

    @property
    def joined(self) -> bool:
        return self.identifier is not None and self.room_code is not None

    def key_matches(self, key: str) -> bool:
        return self.key is not None and hmac.compare_digest(self.key, key)


class SessionRegistry:
    def __init__(self):
        self.sessions: Dict[str, Session] = {}  # connection_id -> Session

    def open(self, connection_id: str, websocket: WebSocket) -> Session:
        session = Session(connection_id, websocket)
        self.sessions[connection_id] = session
        return session

    def get(self, connection_id: str) -> Optional[Session]:
        return self.sessions.get(connection_id)

    def find(self, identifier: str) -> Optional[Session]:
        for session in self.sessions.values():
            if session.identifier == identifier:
                return session
        return None

    def register(self, connection_id: str, identifier: str, key: str, name: str,
                 room_code: str) -> Tuple[str, Optional[Session]]:
        """Attach an identity to a connection.

        Returns ``(outcome, evicted)``. When the identifier is already held with
        the same key the older session is removed from the registry and returned
        so the caller can close it. A different key raises IdentityConflict and
        leaves the registry untouched.
        """
        session = self.sessions[connection_id]
        evicted = None
        outcome = FRESH
        existing = self.find(identifier)
        if existing is not None and existing is not session:
            if not existing.key_matches(key):
                logger.warning("Rejected connection %s: identifier %s already in use",
                               connection_id, identifier)
                raise IdentityConflict("id taken")
            evicted = self.sessions.pop(existing.connection_id)
            outcome = RECONNECT
            logger.info("Player %s reconnected, evicting connection %s",
                        identifier, evicted.connection_id)

        session.identifier = identifier
        session.key = key
        session.name = name
        session.room_code = room_code
        return outcome, evicted

    def unregister(self, connection_id: str) -> Optional[Session]:
        return self.sessions.pop(connection_id, None)

"""Exceptions raised by the game server.

Each carries a short ``reason`` string that is shown to the client in a
``kick`` message when the connection is refused.
"""


class GameError(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidJoin(GameError):
    """Identifier or room code was empty after sanitization."""


class IdentityConflict(GameError):
    """Another connection holds the identifier with a different key."""


class JoinRejected(GameError):
    """The room refused a new member (full, or a game is in progress)."""


class ProtocolViolation(GameError):
    """Tamper-class request: the connection is dropped, never answered."""


class InvalidSettings(GameError):
    """Settings failed validation; the whole update is refused."""

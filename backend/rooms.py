import asyncio
import hmac
import logging
from typing import Dict, List, Optional, Tuple

import config
from errors import JoinRejected
from round_timer import RoundTimer
from sessions import Session

logger = logging.getLogger(__name__)

LOBBY = "LOBBY"
PLAYING = "PLAYING"
PRESENTING = "PRESENTING"

JOINED = "joined"
RECONNECTED = "reconnected"


class Member:
    def __init__(self, identifier: str, name: str, key: str, connection_id: str):
        self.identifier = identifier
        self.name = name
        self.key = key
        self.connection_id = connection_id
        self.connected = True

    def to_dict(self) -> dict:
        return {"id": self.identifier, "name": self.name}


class Book:
    def __init__(self, owner: str, title: str, authors: List[str]):
        self.owner = owner
        self.title = title
        self.authors = authors  # fixed at game start
        self.pages: Dict[int, dict] = {}  # page index -> {value, author, mode}
        self.presented = False

    def to_dict(self) -> dict:
        return {
            "id": self.owner,
            "title": self.title,
            "authors": self.authors,
            "pages": [self.pages.get(i) for i in range(len(self.authors))],
            "presented": self.presented,
        }


class Room:
    def __init__(self, code: str):
        self.code = code
        self.members: Dict[str, Member] = {}  # identifier -> Member, in join order
        self.host: Optional[str] = None
        self.settings: dict = dict(config.SETTINGS_DEFAULT)
        self.state = LOBBY
        self.page_index = 0
        self.submitted: set = set()  # identifiers that submitted the current page
        self.books: Optional[Dict[str, Book]] = None
        self.presenter: Optional[str] = None
        self.presenting_book: Optional[str] = None
        self.present_cursor = -1
        self.timer = RoundTimer()
        self.lock = asyncio.Lock()

    @property
    def page_count(self) -> int:
        return int(self.settings["pageCount"])

    def connected_members(self) -> List[Member]:
        return [m for m in self.members.values() if m.connected]

    def member_for(self, session: Session) -> Optional[Member]:
        member = self.members.get(session.identifier)
        if member is not None and member.connection_id == session.connection_id:
            return member
        return None

    def book_authored_by(self, identifier: str, page_index: int) -> Optional[Book]:
        for book in (self.books or {}).values():
            if book.authors[page_index] == identifier:
                return book
        return None

    def reassign_host(self) -> bool:
        """Give host to the earliest-joined connected member. Returns True if it changed."""
        current = self.members.get(self.host) if self.host else None
        if current is not None and current.connected:
            return False
        for member in self.members.values():
            if member.connected:
                self.host = member.identifier
                return True
        self.host = None
        return False

    def reset_to_lobby(self):
        """Back to the lobby after presenting, keeping members and settings."""
        self.timer.cancel()
        self.state = LOBBY
        self.page_index = 0
        self.submitted = set()
        self.books = None
        self.presenter = None
        self.presenting_book = None
        self.present_cursor = -1
        for identifier in [i for i, m in self.members.items() if not m.connected]:
            del self.members[identifier]


def is_host(room: Room, session: Session) -> bool:
    return room.member_for(session) is not None and room.host == session.identifier


def is_presenter(room: Room, session: Session) -> bool:
    return (room.member_for(session) is not None and room.presenter is not None
            and room.presenter == session.identifier)


class RoomRegistry:
    def __init__(self):
        self.rooms: Dict[str, Room] = {}

    def get(self, code: str) -> Optional[Room]:
        return self.rooms.get(code)

    def get_or_create(self, code: str) -> Room:
        room = self.rooms.get(code)
        if room is None:
            room = Room(code)
            self.rooms[code] = room
            logger.info("Room %s created", code)
        return room

    def delete(self, code: str):
        room = self.rooms.pop(code, None)
        if room is not None:
            room.timer.cancel()
            logger.info("Room %s deleted", code)

    def join(self, room: Room, session: Session) -> str:
        """Add or reactivate the session's member. Raises JoinRejected."""
        member = room.members.get(session.identifier)

        if member is not None:
            if not hmac.compare_digest(member.key, session.key or ""):
                raise JoinRejected("id taken")
            if member.connected and member.connection_id != session.connection_id:
                # Registry eviction already dropped the old connection.
                logger.debug("Replacing live connection for %s in room %s",
                             member.identifier, room.code)
            member.connection_id = session.connection_id
            member.name = session.name
            member.connected = True
            room.reassign_host()
            return RECONNECTED

        if room.state != LOBBY:
            raise JoinRejected("game in progress")
        if len(room.connected_members()) >= config.MAX_ROOM_SIZE:
            raise JoinRejected("server full")

        room.members[session.identifier] = Member(
            session.identifier, session.name, session.key, session.connection_id
        )
        if room.host is None:
            room.host = session.identifier
        logger.info("Player %s joined room %s (%d members)",
                    session.identifier, room.code, len(room.members))
        return JOINED

    def leave(self, room: Room, identifier: str) -> Tuple[bool, bool]:
        """Mark a member gone. Returns ``(host_changed, room_deleted)``."""
        member = room.members.get(identifier)
        if member is None:
            return False, False

        if room.state == LOBBY:
            del room.members[identifier]
        else:
            member.connected = False

        if not room.connected_members():
            self.delete(room.code)
            return False, True

        host_changed = room.reassign_host()
        if host_changed:
            logger.info("Host of room %s is now %s", room.code, room.host)
        return host_changed, False

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import List, Optional
import json
import random
import time
import uuid
import logging

import config
from books import generate_books
from errors import GameError, InvalidJoin, InvalidSettings, ProtocolViolation
from messages import (
    Finish, JoinRoom, PresentBack, PresentBook, PresentFinish, PresentForward,
    PresentOverride, StartGame, SubmitPage, UpdateSettings, UpdateTitle, parse_message,
)
from pages import expected_mode, page_value
from rooms import (
    LOBBY, PLAYING, PRESENTING, JOINED, Book, Room, RoomRegistry, is_host, is_presenter,
)
from sanitize import (
    sanitize_identifier, sanitize_key, sanitize_name, sanitize_room_code, sanitize_title,
)
from sessions import Session, SessionRegistry
import settings_validator

logger = logging.getLogger(__name__)


class GameServer:
    """Owns every session and room and drives the round/presentation state machine.

    Room mutations always happen under ``room.lock`` so that submission counting,
    page advance and the broadcasts describing them are atomic per room.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.sessions = SessionRegistry()
        self.rooms = RoomRegistry()
        self.rng = rng or random.Random()
        self.allowed_origins: List[str] = []
        self._handlers = {
            "settings": self.update_settings,
            "startGame": self.start_game,
            "updateTitle": self.update_title,
            "submitPage": self.submit_page,
            "presentBook": self.present_book,
            "presentForward": self.present_forward,
            "presentBack": self.present_back,
            "presentOverride": self.present_override,
            "presentFinish": self.present_finish,
            "finish": self.finish,
        }

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket):
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=config.WS_POLICY_VIOLATION)
            return

        await websocket.accept()
        connection_id = uuid.uuid4().hex
        session = self.sessions.open(connection_id, websocket)
        logger.debug("Connection %s opened", connection_id)

        try:
            while self.sessions.get(connection_id) is session:
                data = await websocket.receive_text()

                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "error", "message": "Message too large"})
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps = session.msg_timestamps
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "error", "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from connection %s: %s", connection_id, data[:100])
                    await websocket.send_json({"type": "error", "message": "Invalid message format"})
                    continue

                await self.handle_message(session, message)
        except WebSocketDisconnect:
            logger.info("Connection %s closed (player %s)", connection_id, session.identifier)
        except Exception:
            if self.sessions.get(connection_id) is session:
                logger.exception("WebSocket error for connection %s", connection_id)
        finally:
            await self.disconnect(connection_id)

    async def disconnect(self, connection_id: str):
        """Forget a connection and let its room react. Safe to call twice."""
        session = self.sessions.unregister(connection_id)
        if session is None or not session.joined:
            return
        room = self.rooms.get(session.room_code)
        if room is None:
            return
        async with room.lock:
            await self._leave(room, session)

    async def drop(self, session: Session, reason: str):
        """Disconnect a tampering or misbehaving client."""
        logger.warning("Dropping connection %s (player %s): %s",
                       session.connection_id, session.identifier, reason)
        await self.disconnect(session.connection_id)
        await self._close(session, config.WS_POLICY_VIOLATION)

    async def kick(self, session: Session, reason: str):
        logger.info("Kicking connection %s (player %s): %s",
                    session.connection_id, session.identifier, reason)
        await self._send(session, {"type": "kick", "reason": reason})
        await self.disconnect(session.connection_id)
        await self._close(session)

    async def _close(self, session: Session, code: int = 1000):
        try:
            await session.websocket.close(code=code)
        except Exception:
            logger.debug("Connection %s already closed", session.connection_id)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def _send(self, session: Session, message: dict):
        try:
            await session.websocket.send_json(message)
        except Exception:
            logger.debug("Send to connection %s failed", session.connection_id)

    async def broadcast(self, room: Room, message: dict, exclude: Optional[str] = None):
        for member in room.connected_members():
            if member.identifier == exclude:
                continue
            session = self.sessions.get(member.connection_id)
            if session is not None:
                await self._send(session, message)

    async def handle_message(self, session: Session, data: dict):
        try:
            message = parse_message(data)
        except ValidationError as e:
            logger.warning("Invalid message from connection %s: %s",
                           session.connection_id, e.errors()[:1])
            await self._send(session, {"type": "error", "message": "Invalid message"})
            return

        try:
            if isinstance(message, JoinRoom):
                await self.join_room(session, message)
                return

            if not session.joined:
                raise ProtocolViolation(f"{message.type} before joinRoom")
            if not session.key_matches(sanitize_key(message.key)):
                raise ProtocolViolation(f"{message.type} with wrong key")
            room = self.rooms.get(session.room_code)
            if room is None:
                raise ProtocolViolation(f"{message.type} for missing room")

            async with room.lock:
                if room.member_for(session) is None:
                    raise ProtocolViolation(f"{message.type} from non-member")
                logger.debug("%s from %s in room %s", message.type, session.identifier, room.code)
                await self._handlers[message.type](room, session, message)
        except ProtocolViolation as e:
            await self.drop(session, e.reason)
        except GameError as e:
            await self.kick(session, e.reason)

    # ------------------------------------------------------------------
    # Lobby
    # ------------------------------------------------------------------

    async def join_room(self, session: Session, message: JoinRoom):
        if session.joined:
            raise ProtocolViolation("joinRoom twice on one connection")

        identifier = sanitize_identifier(message.id)
        room_code = sanitize_room_code(message.roomCode)
        if not identifier or not room_code:
            raise InvalidJoin("invalid room code")
        key = sanitize_key(message.key)
        if not key:
            raise InvalidJoin("invalid key")
        name = sanitize_name(message.name) or identifier

        # Raises IdentityConflict without touching any room
        _, evicted = self.sessions.register(session.connection_id, identifier, key, name, room_code)
        if evicted is not None:
            await self._evict(evicted, room_code)

        while True:
            room = self.rooms.get_or_create(room_code)
            async with room.lock:
                if self.rooms.get(room_code) is not room:
                    # Deleted while we waited for the lock
                    continue
                try:
                    outcome = self.rooms.join(room, session)
                except GameError:
                    if not room.members:
                        self.rooms.delete(room_code)
                    raise
                await self._send(session, self._joined_payload(room, session))
                member = room.members[identifier]
                event = "userJoin" if outcome == JOINED else "userReconnect"
                await self.broadcast(room, {"type": event, **member.to_dict()}, exclude=identifier)
                return

    async def _evict(self, evicted: Session, room_code: str):
        """Close the older connection of a reconnecting player."""
        if evicted.room_code and evicted.room_code != room_code:
            old_room = self.rooms.get(evicted.room_code)
            if old_room is not None:
                async with old_room.lock:
                    await self._leave(old_room, evicted)
        await self._send(evicted, {"type": "kick", "reason": "joined from another connection"})
        await self._close(evicted)

    def _joined_payload(self, room: Room, session: Session) -> dict:
        payload = {
            "type": "joined",
            "roomCode": room.code,
            "id": session.identifier,
            "users": [m.to_dict() for m in room.connected_members()
                      if m.identifier != session.identifier],
            "host": room.host,
            "settings": room.settings,
            "state": room.state,
            "game": None,
        }
        if room.books is not None:
            payload["game"] = {
                "books": {owner: book.to_dict() for owner, book in room.books.items()},
                "page": room.page_index,
                "mode": (expected_mode(room.settings["firstPage"], room.page_index)
                         if room.state == PLAYING else None),
                "submitted": session.identifier in room.submitted,
                "presenter": room.presenter,
                "presentingBook": room.presenting_book,
                "cursor": room.present_cursor,
            }
        return payload

    async def _leave(self, room: Room, session: Session):
        """Caller holds room.lock."""
        if room.member_for(session) is None:
            # Connection was replaced by a reconnect
            return
        host_changed, deleted = self.rooms.leave(room, session.identifier)
        if deleted:
            return
        await self.broadcast(room, {"type": "userLeave", "id": session.identifier})
        if host_changed:
            await self.broadcast(room, {"type": "userHost", "id": room.host})
        if room.state == PLAYING:
            await self._check_barrier(room)

    async def update_settings(self, room: Room, session: Session, message: UpdateSettings):
        if not is_host(room, session):
            raise ProtocolViolation("settings from non-host")
        if room.state != LOBBY:
            logger.warning("Room %s: settings change ignored outside the lobby", room.code)
            return
        if not settings_validator.validate(message.settings):
            raise InvalidSettings("invalid settings")
        room.settings = settings_validator.merge(room.settings, message.settings)
        await self.broadcast(room, {"type": "settings", "settings": room.settings},
                             exclude=session.identifier)

    # ------------------------------------------------------------------
    # Playing
    # ------------------------------------------------------------------

    async def start_game(self, room: Room, session: Session, message: StartGame):
        if not is_host(room, session):
            raise ProtocolViolation("startGame from non-host")
        if room.state != LOBBY:
            await self._send(session, {"type": "error", "message": "Game already started"})
            return
        if not settings_validator.validate(message.settings):
            raise InvalidSettings("invalid settings")
        players = room.connected_members()
        if len(players) < config.MIN_PLAYERS:
            await self._send(session, {
                "type": "error",
                "message": f"At least {config.MIN_PLAYERS} players are needed to start",
            })
            return

        room.settings = settings_validator.merge(room.settings, message.settings)
        authors = generate_books([m.identifier for m in players], room.page_count,
                                 room.settings["pageOrder"], self.rng)
        room.books = {
            m.identifier: Book(m.identifier, sanitize_title("", m.name), authors[m.identifier])
            for m in players
        }
        room.state = PLAYING
        room.page_index = 0
        room.submitted = set()
        logger.info("Room %s started: %d players, %d pages, %s order",
                    room.code, len(players), room.page_count, room.settings["pageOrder"])

        await self.broadcast(room, {
            "type": "startGame",
            "books": authors,
            "start": room.settings["firstPage"],
        })
        self._start_round_timer(room)

    async def update_title(self, room: Room, session: Session, message: UpdateTitle):
        if room.state != PLAYING or room.page_index != 0:
            return
        book = room.books.get(session.identifier)
        if book is None:
            return
        book.title = sanitize_title(message.title, room.members[session.identifier].name)
        await self.broadcast(room, {"type": "title", "id": book.owner, "title": book.title})

    async def submit_page(self, room: Room, session: Session, message: SubmitPage):
        if room.state != PLAYING:
            logger.warning("Room %s: page from %s outside of play", room.code, session.identifier)
            return
        if session.identifier in room.submitted:
            logger.warning("Room %s: duplicate page %d from %s",
                           room.code, room.page_index, session.identifier)
            return
        book = room.book_authored_by(session.identifier, room.page_index)
        if book is None:
            return

        expected = expected_mode(room.settings["firstPage"], room.page_index)
        value = page_value(message.mode, message.value, expected)
        room.submitted.add(session.identifier)
        await self._commit_page(room, book, session.identifier, value, expected)
        await self._check_barrier(room)

    async def _commit_page(self, room: Room, book: Book, author: str, value: Optional[str], mode: str):
        book.pages[room.page_index] = {"value": value, "author": author, "mode": mode}
        await self.broadcast(room, {
            "type": "page",
            "id": book.owner,
            "page": room.page_index,
            "value": value,
            "author": author,
            "mode": mode,
        })

    async def _check_barrier(self, room: Room):
        connected = room.connected_members()
        if connected and all(m.identifier in room.submitted for m in connected):
            await self._advance_page(room)

    async def _advance_page(self, room: Room):
        expected = expected_mode(room.settings["firstPage"], room.page_index)
        for book in room.books.values():
            if room.page_index not in book.pages:
                await self._commit_page(room, book, book.authors[room.page_index], None, expected)

        room.submitted = set()
        room.page_index += 1

        if room.page_index >= room.page_count:
            room.timer.cancel()
            room.state = PRESENTING
            room.presenter = None
            room.presenting_book = None
            room.present_cursor = -1
            logger.info("Room %s finished writing, presenting", room.code)
            await self.broadcast(room, {"type": "startPresenting"})
            return

        await self.broadcast(room, {
            "type": "pageForward",
            "page": room.page_index,
            "mode": expected_mode(room.settings["firstPage"], room.page_index),
        })
        self._start_round_timer(room)

    # ------------------------------------------------------------------
    # Round timer
    # ------------------------------------------------------------------

    def _start_round_timer(self, room: Room):
        mode = expected_mode(room.settings["firstPage"], room.page_index)
        minutes = settings_validator.minutes(room.settings, mode)
        if minutes <= 0:
            room.timer.cancel()
            return
        delay = minutes * config.TIMER_MINUTE_SECONDS + config.TIMER_LATENCY_SECONDS
        room.timer.start(delay, self._on_timer_expired, room, room.page_index)

    def _timer_is_current(self, room: Room, page_index: int) -> bool:
        return (self.rooms.get(room.code) is room and room.state == PLAYING
                and room.page_index == page_index)

    async def _on_timer_expired(self, room: Room, page_index: int):
        async with room.lock:
            if not self._timer_is_current(room, page_index):
                return
            logger.info("Room %s: timer finished on page %d", room.code, page_index)
            await self.broadcast(room, {"type": "timerFinish"})
            room.timer.start(config.SUBMIT_GRACE_SECONDS, self._force_advance, room, page_index)

    async def _force_advance(self, room: Room, page_index: int):
        async with room.lock:
            if not self._timer_is_current(room, page_index):
                return
            missing = [m.identifier for m in room.connected_members()
                       if m.identifier not in room.submitted]
            logger.info("Room %s: forcing page %d, %d page(s) missing",
                        room.code, page_index, len(missing))
            await self._advance_page(room)

    # ------------------------------------------------------------------
    # Presenting
    # ------------------------------------------------------------------

    async def present_book(self, room: Room, session: Session, message: PresentBook):
        if not is_host(room, session):
            raise ProtocolViolation("presentBook from non-host")
        if room.state != PRESENTING:
            return
        book = room.books.get(message.book)
        if book is None:
            logger.warning("Room %s: no book %r to present", room.code, message.book)
            return
        room.presenting_book = book.owner
        room.presenter = book.owner
        room.present_cursor = -1
        book.presented = True
        await self.broadcast(room, {"type": "presentBook", "book": book.owner, "presenter": room.presenter})

    async def present_forward(self, room: Room, session: Session, message: PresentForward):
        if not is_presenter(room, session):
            raise ProtocolViolation("presentForward from non-presenter")
        if room.present_cursor < room.page_count - 1:
            room.present_cursor += 1
            await self.broadcast(room, {"type": "presentForward", "page": room.present_cursor})

    async def present_back(self, room: Room, session: Session, message: PresentBack):
        if not is_presenter(room, session):
            raise ProtocolViolation("presentBack from non-presenter")
        if room.present_cursor > -1:
            room.present_cursor -= 1
            await self.broadcast(room, {"type": "presentBack", "page": room.present_cursor})

    async def present_override(self, room: Room, session: Session, message: PresentOverride):
        if not is_host(room, session):
            raise ProtocolViolation("presentOverride from non-host")
        if room.presenting_book is None:
            return
        room.presenter = session.identifier
        await self.broadcast(room, {"type": "presentOverride", "presenter": room.presenter})

    async def present_finish(self, room: Room, session: Session, message: PresentFinish):
        if not is_presenter(room, session):
            raise ProtocolViolation("presentFinish from non-presenter")
        book = room.presenting_book
        room.presenter = None
        room.presenting_book = None
        room.present_cursor = -1
        await self.broadcast(room, {
            "type": "presentFinish",
            "book": book,
            "allPresented": all(b.presented for b in room.books.values()),
        })

    async def finish(self, room: Room, session: Session, message: Finish):
        if not is_host(room, session):
            raise ProtocolViolation("finish from non-host")
        if room.state != PRESENTING:
            return
        room.reset_to_lobby()
        logger.info("Room %s back in the lobby", room.code)
        await self.broadcast(room, {"type": "finish"})

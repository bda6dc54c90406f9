"""Inbound WebSocket frames, one pydantic model per event ``type``."""
from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class KeyedMessage(BaseModel):
    key: str


class JoinRoom(BaseModel):
    type: Literal["joinRoom"]
    id: str
    key: str
    name: str
    roomCode: str


class UpdateSettings(KeyedMessage):
    type: Literal["settings"]
    settings: Dict[str, Any]


class StartGame(KeyedMessage):
    type: Literal["startGame"]
    settings: Dict[str, Any]


class UpdateTitle(KeyedMessage):
    type: Literal["updateTitle"]
    title: str


class SubmitPage(KeyedMessage):
    type: Literal["submitPage"]
    mode: str
    value: str


class PresentBook(KeyedMessage):
    type: Literal["presentBook"]
    book: str

    @field_validator("book", mode="before")
    @classmethod
    def book_as_string(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class PresentForward(KeyedMessage):
    type: Literal["presentForward"]


class PresentBack(KeyedMessage):
    type: Literal["presentBack"]


class PresentOverride(KeyedMessage):
    type: Literal["presentOverride"]


class PresentFinish(KeyedMessage):
    type: Literal["presentFinish"]


class Finish(KeyedMessage):
    type: Literal["finish"]


ClientMessage = Annotated[
    Union[
        JoinRoom, UpdateSettings, StartGame, UpdateTitle, SubmitPage, PresentBook,
        PresentForward, PresentBack, PresentOverride, PresentFinish, Finish,
    ],
    Field(discriminator="type"),
]

_client_message = TypeAdapter(ClientMessage)


def parse_message(data: Any):
    """Validate a decoded JSON frame. Raises pydantic.ValidationError."""
    return _client_message.validate_python(data)

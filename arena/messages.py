"""WebSocket message schemas for client -> server traffic.

Every frame is a JSON object with a ``type`` tag. Any message may carry
``playerId`` and ``gameId``; the server binds them to the connection before
dispatching. Server -> client messages are plain dicts built by the game
manager.
"""
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, TypeAdapter, field_validator

from arena.errors import MalformedMessage


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    player_id: Optional[str] = Field(default=None, alias="playerId")
    game_id: Optional[str] = Field(default=None, alias="gameId")

    @field_validator("player_id", "game_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CreateGame(InboundMessage):
    type: Literal["createGame"] = "createGame"


class JoinGame(InboundMessage):
    type: Literal["joinGame"] = "joinGame"


class RequestMatchmaking(InboundMessage):
    type: Literal["requestMatchmaking"] = "requestMatchmaking"


class CancelMatchmaking(InboundMessage):
    type: Literal["cancelMatchmaking"] = "cancelMatchmaking"


class MakeMove(InboundMessage):
    type: Literal["makeMove"] = "makeMove"
    index: StrictInt  # range is checked by the game, not the schema


class LeaveGame(InboundMessage):
    type: Literal["leaveGame"] = "leaveGame"


class RematchRequest(InboundMessage):
    type: Literal["rematchRequest"] = "rematchRequest"


class RequestLobby(InboundMessage):
    type: Literal["requestLobby"] = "requestLobby"


class Ping(InboundMessage):
    type: Literal["ping"] = "ping"


ClientMessage = Annotated[
    Union[
        CreateGame,
        JoinGame,
        RequestMatchmaking,
        CancelMatchmaking,
        MakeMove,
        LeaveGame,
        RematchRequest,
        RequestLobby,
        Ping,
    ],
    Field(discriminator="type"),
]

_client_message_adapter = TypeAdapter(ClientMessage)


def parse_message(raw: Union[str, bytes]) -> InboundMessage:
    """Parse one inbound frame, raising MalformedMessage on anything unusable."""
    try:
        return _client_message_adapter.validate_json(raw)
    except ValidationError as e:
        errors = e.errors()
        detail = errors[0]["msg"] if errors else "invalid payload"
        raise MalformedMessage(f"Invalid message format: {detail}") from e

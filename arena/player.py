from __future__ import annotations
from typing import Optional

from arena.enums import Symbol


class Participant:
    def __init__(self, id: str, symbol: Symbol, connection_id: Optional[str] = None):
        self.id = id
        self.symbol = symbol

        # Connection reference is only held while connected
        self.connection_id: Optional[str] = connection_id
        self.connected: bool = connection_id is not None

    def attach(self, connection_id: str) -> None:
        """
        Bind a (new) live connection to this participant.
        Used on join, reconnect and rematch.
        """
        self.connection_id = connection_id
        self.connected = True

    def detach(self) -> None:
        """Mark the participant disconnected and drop its connection reference."""
        self.connection_id = None
        self.connected = False

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return f"<Participant {self.id} ({self.symbol.value}, {state})>"

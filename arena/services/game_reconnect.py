# arena/services/game_reconnect.py
from __future__ import annotations

from typing import Dict, Optional, Set

# ---------- Connection binding ----------

class ConnectionBinding:
    """The (player, game) pair a live connection currently claims."""

    def __init__(self, player_id: Optional[str] = None, game_id: Optional[str] = None) -> None:
        self.player_id = player_id
        self.game_id = game_id

    def __repr__(self) -> str:
        return f"<ConnectionBinding player={self.player_id} game={self.game_id}>"


# ---------- Registry ----------

class ConnectionRegistry:
    """
    Maps live connections to the identity they claim.

    Connections carry no state of their own; whatever a client tells us about
    itself (playerId, gameId) is recorded here and looked up again when the
    connection sends a move or closes.
    """

    def __init__(self) -> None:
        self._live: Set[str] = set()
        self._bindings: Dict[str, ConnectionBinding] = {}

    def open(self, connection_id: str) -> None:
        self._live.add(connection_id)

    def is_live(self, connection_id: Optional[str]) -> bool:
        return connection_id is not None and connection_id in self._live

    def live_count(self) -> int:
        return len(self._live)

    def bind(self, connection_id: str, player_id: Optional[str] = None,
             game_id: Optional[str] = None) -> ConnectionBinding:
        """Overwrite whichever fields the client supplied."""
        if connection_id not in self._live:
            return ConnectionBinding()
        binding = self._bindings.setdefault(connection_id, ConnectionBinding())
        if player_id:
            binding.player_id = player_id
        if game_id:
            binding.game_id = game_id
        return binding

    def rebind_game(self, connection_id: Optional[str], game_id: str) -> None:
        if connection_id is None or connection_id not in self._live:
            return
        self.bind(connection_id, game_id=game_id)

    def binding(self, connection_id: str) -> Optional[ConnectionBinding]:
        return self._bindings.get(connection_id)

    def clear(self, connection_id: str) -> None:
        """Forget the identity but keep the connection live."""
        self._bindings.pop(connection_id, None)

    def close(self, connection_id: str) -> Optional[ConnectionBinding]:
        """
        Drop a connection. Returns its last binding, or None if it was
        already closed (so repeated close notifications are harmless).
        """
        if connection_id not in self._live:
            return None
        self._live.discard(connection_id)
        return self._bindings.pop(connection_id, None) or ConnectionBinding()

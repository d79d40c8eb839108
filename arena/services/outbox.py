from typing import Dict, List, Optional, Tuple


class Outbox:
    """
    Messages produced while handling one event.

    Handlers run under the game manager lock and must not touch sockets, so
    they queue messages here; the connection manager delivers them once the
    lock is released, in the order they were added.
    """

    def __init__(self):
        # (connection_id or None for broadcast, message)
        self.messages: List[Tuple[Optional[str], Dict]] = []

    def send(self, connection_id: Optional[str], message: Dict) -> None:
        """Queue a message for one connection. No-op for a missing connection."""
        if connection_id is None:
            return
        self.messages.append((connection_id, message))

    def broadcast(self, message: Dict) -> None:
        """Queue a message for every open connection."""
        self.messages.append((None, message))

    def sent_to(self, connection_id: str) -> List[Dict]:
        """Messages addressed to one connection, including broadcasts"""
        return [m for target, m in self.messages if target is None or target == connection_id]

    def types_for(self, connection_id: str) -> List[str]:
        return [m["type"] for m in self.sent_to(connection_id)]

    def broadcasts(self) -> List[Dict]:
        return [m for target, m in self.messages if target is None]

    def __len__(self):
        return len(self.messages)

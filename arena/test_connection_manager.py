"""
Test the ConnectionManager delivery path
Uses stand-in sockets so send timing can be controlled
"""

import asyncio

from arena.main import ConnectionManager
from arena.messages import Ping
from arena.services.game_manager import GameManager


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def accept(self):
        pass

    async def send_json(self, message):
        # Yield so that other operations get a chance to interleave
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


def two_messages(connection_id, outbox):
    outbox.send(connection_id, {"type": "first"})
    outbox.send(connection_id, {"type": "second"})


def one_message(connection_id, outbox):
    outbox.send(connection_id, {"type": "third"})


def test_outboxes_delivered_in_operation_order():
    async def scenario():
        manager = ConnectionManager(GameManager())
        socket = FakeSocket()
        connection_id = await manager.connect(socket)

        await asyncio.gather(
            manager.run(two_messages, connection_id),
            manager.run(one_message, connection_id),
        )
        return [m["type"] for m in socket.sent]

    assert asyncio.run(scenario()) == ["first", "second", "third"]


def test_failed_send_disconnects_connection():
    async def scenario():
        game_manager = GameManager()
        manager = ConnectionManager(game_manager)
        connection_id = await manager.connect(FakeSocket(fail=True))

        await manager.run(game_manager.handle_message, connection_id, Ping())
        return game_manager, manager, connection_id

    game_manager, manager, connection_id = asyncio.run(scenario())

    assert connection_id not in manager.active_connections
    assert not game_manager.registry.is_live(connection_id)

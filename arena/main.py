from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional
import asyncio
import logging
from pathlib import Path
from datetime import datetime, timedelta
import uuid

from arena.config import Settings, get_settings
from arena.errors import GameError
from arena.messages import parse_message
from arena.services.game_manager import GameManager, generate_player_id
from arena.services.outbox import Outbox

logger = logging.getLogger(__name__)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging(settings: Settings) -> None:
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(exist_ok=True)

    log_filename = log_dir / f"server_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format='%(asctime)s [%(levelname)s] %(message)s',
        handlers=[
            logging.FileHandler(log_filename),
            logging.StreamHandler()  # Also print to console
        ]
    )
    logger.info(f"Log file: {log_filename}")

# ============================================================================
# CONNECTION MANAGER
# ============================================================================

class ConnectionManager:
    """
    Owns the open WebSockets and runs game manager operations.

    Operations run under the game manager lock; the messages they produce are
    sent only after the lock is released. The send lock is taken before the
    game lock is let go, so outboxes go out in the order their operations ran.
    Lock order is always game lock, then send lock.
    """

    def __init__(self, game_manager: GameManager):
        self.active_connections: Dict[str, WebSocket] = {}
        self.game_manager = game_manager
        self.send_lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex[:12]
        self.active_connections[connection_id] = websocket
        async with self.game_manager.lock:
            self.game_manager.open_connection(connection_id)
        logger.info(f"Client connected: {connection_id} | Total connections: {len(self.active_connections)}")
        return connection_id

    async def disconnect(self, connection_id: str):
        self.active_connections.pop(connection_id, None)
        await self.run(self.game_manager.disconnect, connection_id)
        logger.info(f"Client disconnected: {connection_id} | Total connections: {len(self.active_connections)}")

    async def run(self, operation: Callable, *args):
        """Run operation(*args, outbox) under the lock, then deliver the outbox."""
        outbox = Outbox()
        game_lock = self.game_manager.lock
        await game_lock.acquire()
        try:
            operation(*args, outbox)
            await self.send_lock.acquire()
        finally:
            game_lock.release()

        try:
            broken = await self.deliver(outbox)
        finally:
            self.send_lock.release()

        # A failed send counts as a disconnect
        for connection_id in broken:
            await self.disconnect(connection_id)

    async def reply(self, message: dict, connection_id: str):
        """Send a single message outside any operation, in order with outboxes"""
        async with self.send_lock:
            sent = await self.send_personal_message(message, connection_id)
        if not sent:
            await self.disconnect(connection_id)

    async def deliver(self, outbox: Outbox) -> List[str]:
        """Send every message in the outbox. Returns the connections that failed."""
        broken = []
        for target, message in outbox.messages:
            targets = list(self.active_connections) if target is None else [target]
            for connection_id in targets:
                if connection_id not in self.active_connections:
                    continue
                if not await self.send_personal_message(message, connection_id):
                    broken.append(connection_id)
        return list(dict.fromkeys(broken))

    async def send_personal_message(self, message: dict, connection_id: str) -> bool:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.warning(f"Cannot send to {connection_id}: not in active connections")
            return False
        try:
            await websocket.send_json(message)
            logger.debug(f"Sent to {connection_id}: {message['type']}")
            return True
        except Exception as e:
            logger.error(f"Error sending to {connection_id}: {e}")
            self.active_connections.pop(connection_id, None)
            return False

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

def create_app(settings: Optional[Settings] = None,
               coin: Optional[Callable[[], bool]] = None,
               clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    game_manager = GameManager(
        coin=coin,
        clock=clock,
        lobby_freshness=timedelta(seconds=settings.LOBBY_FRESHNESS_S),
        stale_after=timedelta(seconds=settings.STALE_AFTER_S)
    )
    manager = ConnectionManager(game_manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start background tasks, clean them up on shutdown"""
        await game_manager.start_timer_updates(
            manager.run,
            matchmaking_interval=settings.MATCHMAKING_INTERVAL_S,
            reaper_interval=settings.REAPER_INTERVAL_S
        )
        yield
        game_manager.stop_timer_updates()
        logger.info("Server shutting down - cleaned up background tasks")

    app = FastAPI(title="Tic-Tac-Toe Arena", lifespan=lifespan)
    app.state.game_manager = game_manager
    app.state.connection_manager = manager

    # ========================================================================
    # HTTP ENDPOINTS
    # ========================================================================

    @app.get("/status")
    async def status():
        """Get server status"""
        stats = game_manager.get_stats()
        return {
            "connections": len(manager.active_connections),
            "queue": stats["queue_size"],
            "active_games": stats["active_games"],
            "total_games": stats["total_games"],
            "finished_games": stats["finished_games"]
        }

    @app.get("/get_player_id")
    async def get_player_id():
        """Generate a unique player ID for a new client"""
        player_id = generate_player_id()
        logger.info(f"Generated new player ID: {player_id}")
        return {
            "player_id": player_id
        }

    # ========================================================================
    # WEBSOCKET ENDPOINT
    # ========================================================================

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        connection_id = await manager.connect(websocket)

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = parse_message(data)
                    logger.info(f"Message from {connection_id}: {message.type}")
                    await manager.run(game_manager.handle_message, connection_id, message)
                except GameError as e:
                    logger.warning(f"Rejected message from {connection_id}: {e.code} | {e}")
                    await manager.reply(e.to_message(), connection_id)

                if connection_id not in manager.active_connections:
                    # A send to this socket failed and it has been disconnected
                    break

        except WebSocketDisconnect:
            await manager.disconnect(connection_id)
        except Exception as e:
            logger.error(f"Error with client {connection_id}: {e}", exc_info=True)
            await manager.disconnect(connection_id)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    logger.info(f"Starting server on http://{settings.HOST}:{settings.PORT}")
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)

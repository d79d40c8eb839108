"""
GameManager - Owns every game session and the matchmaking queue
- Custom games (create / join / reconnect / leave)
- Matchmaking
- Moves and outcome detection
- Rematch handshake
- Lobby publishing
- Idle game cleanup

Every public operation is synchronous and must run while holding ``lock``.
Operations never touch sockets; they queue outbound messages on the Outbox
they are given and the caller delivers them after releasing the lock.
"""

from typing import Awaitable, Callable, Deque, Dict, List, Optional
from collections import deque
from datetime import datetime, timedelta
import asyncio, logging, random, uuid

from arena.enums import GameStatus, GameType, Symbol
from arena.errors import (
    AlreadyQueuedOrInGame,
    InvalidMove,
    MalformedMessage,
    MissingIdentity,
    NotQueued,
    RematchNotPossible,
    SessionNotFound,
)
from arena.messages import (
    CancelMatchmaking,
    CreateGame,
    InboundMessage,
    JoinGame,
    LeaveGame,
    MakeMove,
    Ping,
    RematchRequest,
    RequestLobby,
    RequestMatchmaking,
)
from arena.player import Participant
from arena.services.game_reconnect import ConnectionRegistry
from arena.services.game_state import GameState
from arena.services.lobby import lobby_message
from arena.services.outbox import Outbox

logger = logging.getLogger(__name__)


def generate_player_id() -> str:
    return f"player_{uuid.uuid4().hex[:8]}"


def fair_coin() -> bool:
    return random.random() < 0.5


class QueueEntry:
    def __init__(self, player_id: str, connection_id: str, joined_at: datetime):
        self.player_id = player_id
        self.connection_id = connection_id
        self.joined_at = joined_at

    def __repr__(self):
        return f"<QueueEntry {self.player_id} via {self.connection_id}>"


class GameManager:
    """Manages all games, matchmaking and rematches"""

    def __init__(self,
                 coin: Optional[Callable[[], bool]] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 lobby_freshness: timedelta = timedelta(minutes=5),
                 stale_after: timedelta = timedelta(minutes=10)):
        self.games: Dict[str, GameState] = {}
        self.matchmaking_queue: Deque[QueueEntry] = deque()
        self.registry = ConnectionRegistry()
        self.lock = asyncio.Lock()

        self.lobby_freshness = lobby_freshness
        self.stale_after = stale_after

        self._coin = coin or fair_coin  # True -> first candidate plays X
        self._clock = clock or datetime.now
        self._game_counter = 0  # For unique game IDs
        self._timer_tasks: List[asyncio.Task] = []

    # ============================================================================
    # CONNECTIONS & DISPATCH
    # ============================================================================

    def open_connection(self, connection_id: str) -> None:
        self.registry.open(connection_id)

    def handle_message(self, connection_id: str, message: InboundMessage, outbox: Outbox) -> None:
        """
        Bind whatever identity the message carries to the connection, then
        dispatch on the message kind. Messages arriving on a connection that
        is already closed are dropped.
        """
        if not self.registry.is_live(connection_id):
            logger.warning(f"Ignoring {message.type} from closed connection {connection_id}")
            return

        binding = self.registry.bind(connection_id, message.player_id, message.game_id)

        if isinstance(message, CreateGame):
            self.create_game(connection_id, binding.player_id, outbox)
        elif isinstance(message, JoinGame):
            self.join_game(connection_id, message.game_id, message.player_id, outbox)
        elif isinstance(message, RequestMatchmaking):
            self.request_matchmaking(connection_id, binding.player_id, outbox)
        elif isinstance(message, CancelMatchmaking):
            self.cancel_matchmaking(connection_id, binding.player_id, outbox)
        elif isinstance(message, MakeMove):
            self.make_move(connection_id, message.index, outbox)
        elif isinstance(message, LeaveGame):
            self.leave_game(connection_id, outbox)
        elif isinstance(message, RematchRequest):
            self.request_rematch(connection_id, outbox)
        elif isinstance(message, RequestLobby):
            self.send_lobby(connection_id, outbox)
        elif isinstance(message, Ping):
            outbox.send(connection_id, {"type": "pong"})
        else:
            raise MalformedMessage(f"Unsupported message type: {type(message).__name__}")

    def disconnect(self, connection_id: str, outbox: Outbox) -> None:
        """
        Connection closed. Drops queue entries owned by the connection and
        marks the bound player disconnected. Safe to call more than once.
        """
        binding = self.registry.close(connection_id)
        if binding is None:
            return

        before = len(self.matchmaking_queue)
        self.matchmaking_queue = deque(
            e for e in self.matchmaking_queue if e.connection_id != connection_id
        )
        if len(self.matchmaking_queue) < before:
            logger.info(f"Removed {binding.player_id} from matchmaking queue on disconnect")

        if not binding.player_id or not binding.game_id:
            return
        game = self.games.get(binding.game_id)
        if not game:
            return
        player = game.get_player_by_id(binding.player_id)
        # A newer connection may already have reclaimed this player
        if not player or player.connection_id != connection_id:
            return

        player.detach()
        game.touch(self._clock())
        logger.info(f"Player {player.id} in game {game.game_id} marked as disconnected")

        opponent = game.get_opponent(player.id)
        if opponent and opponent.connected:
            outbox.send(opponent.connection_id, {
                "type": "opponentDisconnected",
                "playerSymbol": player.symbol.value
            })

        if game.game_type == GameType.MATCHMAKING and game.status == GameStatus.PLAYING:
            self.remove_game(game.game_id)
            logger.info(f"Matchmaking game {game.game_id} deleted due to player disconnect")

    # ============================================================================
    # CUSTOM GAMES
    # ============================================================================

    def create_game(self, connection_id: str, player_id: Optional[str], outbox: Outbox) -> GameState:
        """Create a custom game with the requester as X, waiting for an opponent."""
        player_id = player_id or generate_player_id()
        self._ensure_available(player_id)
        self._withdraw_rematch_offers(player_id)

        creator = Participant(player_id, Symbol.X, connection_id)
        game = self._new_game(GameType.CUSTOM, [creator], GameStatus.WAITING, Symbol.X)
        self.registry.bind(connection_id, player_id, game.game_id)

        outbox.send(connection_id, {
            "type": "gameCreated",
            "playerId": player_id,
            **game.to_dict(player_id)
        })
        logger.info(f"Custom game {game.game_id} created by {player_id}")
        self.publish_lobby(outbox)
        return game

    def join_game(self, connection_id: str, game_id: Optional[str], player_id: Optional[str],
                  outbox: Outbox) -> GameState:
        """
        Join a custom game, or reconnect to it if the player is already seated.
        """
        if not game_id or not player_id:
            raise MissingIdentity("Missing game ID or player ID to join")

        game = self.games.get(game_id)
        if not game or not game.is_custom():
            raise SessionNotFound("Custom game not found or is a matchmaking game")

        now = self._clock()
        existing = game.get_player_by_id(player_id)
        if existing:
            self._reconnect(game, existing, connection_id, now, outbox)
            return game

        game.check_joinable()
        self._ensure_available(player_id)
        self._withdraw_rematch_offers(player_id)
        game.add_player(player_id, connection_id, now)
        self.registry.bind(connection_id, player_id, game_id)

        outbox.send(connection_id, {"type": "gameJoined", **game.to_dict(player_id)})
        opponent = game.get_opponent(player_id)
        if opponent and opponent.connected:
            outbox.send(opponent.connection_id, {"type": "opponentJoined", **game.to_dict(opponent.id)})

        logger.info(f"Player {player_id} joined custom game {game_id}")
        self.publish_lobby(outbox)
        return game

    def _reconnect(self, game: GameState, player: Participant, connection_id: str,
                   now: datetime, outbox: Outbox) -> None:
        player.attach(connection_id)
        game.touch(now)
        self.registry.bind(connection_id, player.id, game.game_id)

        outbox.send(connection_id, {"type": "reconnected", **game.to_dict(player.id)})
        opponent = game.get_opponent(player.id)
        if opponent and opponent.connected:
            outbox.send(opponent.connection_id, {
                "type": "opponentReconnected",
                "playerSymbol": player.symbol.value
            })
        logger.info(f"Player {player.id} reconnected to game {game.game_id}")

    def leave_game(self, connection_id: str, outbox: Outbox) -> None:
        """
        Leave the game bound to this connection.
        The leaver always gets a confirmation and loses its binding.
        """
        binding = self.registry.binding(connection_id)
        if not binding or not binding.player_id or not binding.game_id:
            raise MissingIdentity("Not in a game to leave")

        player_id, game_id = binding.player_id, binding.game_id
        game = self.games.get(game_id)
        if game and game.remove_player(player_id):
            logger.info(f"Player {player_id} left game {game_id}")

            if game.is_custom() and len(game.players) == 1:
                # A finished game is never reopened
                if game.status != GameStatus.FINISHED:
                    game.status = GameStatus.WAITING
                game.touch(self._clock())
                remaining = game.players[0]
                outbox.send(remaining.connection_id, {
                    "type": "opponentLeft",
                    "message": "Your opponent has left the game. Waiting for a new player."
                })
                self.publish_lobby(outbox)
            else:
                survivors = game.connected_players()
                self.remove_game(game_id)
                for survivor in survivors:
                    outbox.send(survivor.connection_id, {
                        "type": "opponentLeft",
                        "message": "Your opponent has left the game."
                    })
                if game.is_custom():
                    self.publish_lobby(outbox)

        self.registry.clear(connection_id)
        outbox.send(connection_id, {"type": "gameLeft", "message": "You have left the game."})

    # ============================================================================
    # MOVES
    # ============================================================================

    def make_move(self, connection_id: str, index: int, outbox: Outbox) -> GameState:
        """Apply a move for the player bound to this connection."""
        binding = self.registry.binding(connection_id)
        if not binding or not binding.player_id or not binding.game_id:
            raise InvalidMove("Not in a game")

        game = self.games.get(binding.game_id)
        if not game:
            raise InvalidMove("Game not found for move")

        outcome = game.apply_move(binding.player_id, index, self._clock())

        if outcome is None:
            self._broadcast_to_game(game, {
                "type": "gameState",
                "board": game.board_values(),
                "turn": game.turn.value,
                "status": game.status.value
            }, outbox)
            return game

        self._broadcast_to_game(game, {
            "type": "gameOver",
            "board": game.board_values(),
            "winner": game.winner_value()
        }, outbox)
        logger.info(f"Game {game.game_id} finished. Result: {game.winner_value()}")
        if game.is_custom():
            self.publish_lobby(outbox)
        return game

    # ============================================================================
    # MATCHMAKING
    # ============================================================================

    def request_matchmaking(self, connection_id: str, player_id: Optional[str], outbox: Outbox) -> None:
        if not player_id:
            raise MissingIdentity("Missing player ID for matchmaking")
        self._ensure_available(player_id)
        self._withdraw_rematch_offers(player_id)

        self.matchmaking_queue.append(QueueEntry(player_id, connection_id, self._clock()))
        outbox.send(connection_id, {
            "type": "matchmakingQueued",
            "message": "You have joined the matchmaking queue. Waiting for an opponent...",
            "queueSize": len(self.matchmaking_queue)
        })
        logger.info(f"Player {player_id} joined matchmaking queue. Queue size: {len(self.matchmaking_queue)}")

        self.process_matchmaking_queue(outbox)

    def cancel_matchmaking(self, connection_id: str, player_id: Optional[str], outbox: Outbox) -> None:
        if not player_id:
            raise MissingIdentity("Missing player ID to cancel matchmaking")

        for entry in self.matchmaking_queue:
            if entry.player_id == player_id:
                self.matchmaking_queue.remove(entry)
                outbox.send(connection_id, {
                    "type": "matchmakingCancelled",
                    "message": "Matchmaking cancelled."
                })
                logger.info(f"Player {player_id} cancelled matchmaking. Queue size: {len(self.matchmaking_queue)}")
                return
        raise NotQueued("Not in matchmaking queue")

    def process_matchmaking_queue(self, outbox: Outbox) -> List[GameState]:
        """
        Pair waiting players, oldest first.
        Returns the games created by this sweep.
        """
        live = deque(e for e in self.matchmaking_queue if self.registry.is_live(e.connection_id))
        if len(live) < len(self.matchmaking_queue):
            logger.info(f"Dropped {len(self.matchmaking_queue) - len(live)} disconnected players from queue")
        self.matchmaking_queue = live

        created = []
        while len(self.matchmaking_queue) >= 2:
            first = self.matchmaking_queue.popleft()
            second = self.matchmaking_queue.popleft()

            if not (self.registry.is_live(first.connection_id) and self.registry.is_live(second.connection_id)):
                # Survivors keep their place at the front and wait for the next sweep
                for entry in (second, first):
                    if self.registry.is_live(entry.connection_id):
                        self.matchmaking_queue.appendleft(entry)
                        outbox.send(entry.connection_id, {
                            "type": "matchmakingQueued",
                            "message": "Your potential opponent disconnected. Still waiting for an opponent..."
                        })
                break

            created.append(self._start_match(first, second, outbox))
        return created

    def _start_match(self, first: QueueEntry, second: QueueEntry, outbox: Outbox) -> GameState:
        x_entry, o_entry = (first, second) if self._coin() else (second, first)
        players = [
            Participant(x_entry.player_id, Symbol.X, x_entry.connection_id),
            Participant(o_entry.player_id, Symbol.O, o_entry.connection_id),
        ]
        game = self._new_game(GameType.MATCHMAKING, players, GameStatus.PLAYING, Symbol.X)

        for player in players:
            self.registry.bind(player.connection_id, player.id, game.game_id)
            outbox.send(player.connection_id, {"type": "matchFound", **game.to_dict(player.id)})

        logger.info(f"Matchmaking game {game.game_id} started: {x_entry.player_id} (X) vs {o_entry.player_id} (O)")
        return game

    # ============================================================================
    # REMATCH
    # ============================================================================

    def request_rematch(self, connection_id: str, outbox: Outbox) -> Optional[GameState]:
        """
        Record a rematch offer for the finished game bound to this connection.
        Returns the new game once both players have offered.
        """
        binding = self.registry.binding(connection_id)
        if not binding or not binding.player_id or not binding.game_id:
            raise MissingIdentity("Not in a game to request rematch")

        player_id = binding.player_id
        game = self.games.get(binding.game_id)
        if not game:
            raise RematchNotPossible("Rematch not possible for this game")

        opponent = game.get_opponent(player_id)
        if game.game_type == GameType.MATCHMAKING and opponent and not opponent.connected:
            # Matchmaking players cannot come back, so a rematch would never finish
            raise RematchNotPossible("Your opponent is no longer connected")
        if not self._is_available(player_id, game):
            raise RematchNotPossible("You are already in another game or in the matchmaking queue")

        opponent_busy = opponent is not None and not self._is_available(opponent.id, game)
        if opponent_busy:
            # The opponent moved on; an earlier offer from them no longer counts
            game.rematch_offers.discard(opponent.id)

        all_offered = game.offer_rematch(player_id)
        logger.info(f"Rematch request from {player_id} in game {game.game_id}")

        if opponent and opponent.connected and not opponent_busy:
            outbox.send(opponent.connection_id, {
                "type": "rematchOffered",
                "fromPlayerId": player_id,
                "message": "Your opponent wants a rematch."
            })

        if not all_offered:
            return None
        return self._start_rematch(game, outbox)

    def _start_rematch(self, game: GameState, outbox: Outbox) -> GameState:
        first, second = game.players
        x_old, o_old = (first, second) if self._coin() else (second, first)
        starting = Symbol.X if self._coin() else Symbol.O

        players = [
            Participant(x_old.id, Symbol.X, x_old.connection_id),
            Participant(o_old.id, Symbol.O, o_old.connection_id),
        ]
        new_game = self._new_game(game.game_type, players, GameStatus.PLAYING, starting)

        for player in players:
            if player.connected:
                self.registry.rebind_game(player.connection_id, new_game.game_id)
                outbox.send(player.connection_id, {"type": "rematchAccepted", **new_game.to_dict(player.id)})

        self.remove_game(game.game_id)
        logger.info(f"Rematch accepted for game {game.game_id}. New game: {new_game.game_id}")
        if game.is_custom():
            self.publish_lobby(outbox)
        return new_game

    # ============================================================================
    # LOBBY
    # ============================================================================

    def lobby_snapshot(self) -> dict:
        return lobby_message(self.games.values(), self._clock(), self.lobby_freshness)

    def send_lobby(self, connection_id: str, outbox: Outbox) -> None:
        outbox.send(connection_id, self.lobby_snapshot())

    def publish_lobby(self, outbox: Outbox) -> None:
        outbox.broadcast(self.lobby_snapshot())

    # ============================================================================
    # GAME RETRIEVAL & LIFECYCLE
    # ============================================================================

    def get_game(self, game_id: str) -> Optional[GameState]:
        """Get a game by its ID"""
        return self.games.get(game_id)

    def get_player_game(self, player_id: str) -> Optional[GameState]:
        """Find the unfinished game a player is currently in"""
        for game in self.games.values():
            if game.is_active() and game.get_player_by_id(player_id):
                return game
        return None

    def is_queued(self, player_id: str) -> bool:
        return any(e.player_id == player_id for e in self.matchmaking_queue)

    def get_all_active_games(self) -> List[GameState]:
        """Get all games that are not finished"""
        return [game for game in self.games.values() if game.is_active()]

    def remove_game(self, game_id: str) -> bool:
        """
        Remove a game from the store.
        Returns True if game was removed.
        """
        if game_id in self.games:
            del self.games[game_id]
            return True
        return False

    def reap_idle_games(self, outbox: Outbox) -> int:
        """
        Remove abandoned games.
        Custom games go once nobody is connected or they have been idle too
        long; finished matchmaking games go once idle too long.
        Returns number of games removed.
        """
        now = self._clock()
        removed = 0
        lobby_changed = False

        for game_id, game in list(self.games.items()):
            idle = game.idle_for(now) > self.stale_after
            if game.is_custom() and (game.all_disconnected() or idle):
                self.remove_game(game_id)
                lobby_changed = True
                removed += 1
                logger.info(f"Custom game {game_id} cleaned up due to inactivity or all players disconnected")
            elif game.game_type == GameType.MATCHMAKING and game.status == GameStatus.FINISHED and idle:
                self.remove_game(game_id)
                removed += 1
                logger.info(f"Finished matchmaking game {game_id} cleaned up due to inactivity")

        if lobby_changed:
            self.publish_lobby(outbox)
        return removed

    def _new_game(self, game_type: GameType, players: List[Participant],
                  status: GameStatus, turn: Symbol) -> GameState:
        game_id = f"game_{self._game_counter}"
        self._game_counter += 1
        game = GameState(game_id, game_type, players, status=status, turn=turn, now=self._clock())
        self.games[game_id] = game
        return game

    def _is_available(self, player_id: str, ignore: Optional[GameState] = None) -> bool:
        """Not queued and not seated in any unfinished game other than ``ignore``"""
        if self.is_queued(player_id):
            return False
        current = self.get_player_game(player_id)
        return current is None or current is ignore

    def _ensure_available(self, player_id: str) -> None:
        """A player may sit in at most one unfinished game or queue entry"""
        if not self._is_available(player_id):
            raise AlreadyQueuedOrInGame(
                "You are already in an active game or in the matchmaking queue. "
                "Please finish/leave or cancel first."
            )

    def _withdraw_rematch_offers(self, player_id: str) -> None:
        """Drop rematch offers a player left behind in finished games"""
        for game in self.games.values():
            if not game.is_active() and player_id in game.rematch_offers:
                game.rematch_offers.discard(player_id)
                logger.info(f"Withdrew rematch offer from {player_id} in game {game.game_id}")

    def _broadcast_to_game(self, game: GameState, message: dict, outbox: Outbox) -> None:
        """Send message to every connected player in a game"""
        for player in game.connected_players():
            outbox.send(player.connection_id, message)

    # ============================================================================
    # BACKGROUND SWEEPS
    # ============================================================================

    async def start_timer_updates(self, run: Callable[..., Awaitable[None]],
                                  matchmaking_interval: float, reaper_interval: float):
        """
        Start the periodic matchmaking sweep and idle reaper.
        run: async callable that executes an operation under the lock and
        delivers its outbox.
        """
        async def every(interval: float, operation):
            while True:
                await asyncio.sleep(interval)
                try:
                    await run(operation)
                except Exception:
                    logger.exception(f"Background task {operation.__name__} failed")

        self._timer_tasks = [
            asyncio.create_task(every(matchmaking_interval, self.process_matchmaking_queue)),
            asyncio.create_task(every(reaper_interval, self.reap_idle_games)),
        ]
        logger.info("Matchmaking sweep and idle reaper started")

    def stop_timer_updates(self):
        """Stop the background tasks"""
        for task in self._timer_tasks:
            task.cancel()
        self._timer_tasks = []
        logger.info("Matchmaking sweep and idle reaper stopped")

    # ============================================================================
    # STATISTICS & INFO
    # ============================================================================

    def get_stats(self) -> dict:
        """Get statistics about current games and queue"""
        active = len(self.get_all_active_games())
        return {
            "total_games": len(self.games),
            "active_games": active,
            "finished_games": len(self.games) - active,
            "queue_size": len(self.matchmaking_queue),
            "connections": self.registry.live_count()
        }

    def __repr__(self):
        stats = self.get_stats()
        return f"<GameManager: {stats['active_games']} active, {stats['queue_size']} in queue>"

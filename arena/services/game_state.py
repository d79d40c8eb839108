from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from arena.enums import GameStatus, GameType, Symbol
from arena.errors import InvalidMove, InvalidState, RematchNotPossible, SessionFull
from arena.player import Participant
from arena.services.outcome import DRAW, Outcome, evaluate_board

BOARD_SIZE = 9


class GameState:
    def __init__(self, game_id: str, game_type: GameType, players: List[Participant],
                 status: GameStatus = GameStatus.WAITING, turn: Symbol = Symbol.X,
                 now: Optional[datetime] = None):
        # Game identification
        self.game_id: str = game_id
        self.game_type: GameType = game_type
        self.status: GameStatus = status

        # Board: None for an empty cell
        self.board: List[Optional[Symbol]] = [None] * BOARD_SIZE
        self.turn: Symbol = turn

        # Players (never more than two)
        self.players: List[Participant] = list(players)
        x_player = next((p for p in self.players if p.symbol == Symbol.X), self.players[0])
        self.creator_id: str = x_player.id

        # Rematch handshake, only meaningful once finished
        self.rematch_offers: Set[str] = set()

        # Result
        self.winner: Outcome = None

        # Timestamps
        now = now or datetime.now()
        self.created_at: datetime = now
        self.last_activity: datetime = now

    # --- Helper Methods ---
    def touch(self, now: datetime) -> None:
        self.last_activity = now

    def is_custom(self) -> bool:
        return self.game_type == GameType.CUSTOM

    def is_active(self) -> bool:
        """Waiting or playing, i.e. not finished"""
        return self.status != GameStatus.FINISHED

    def get_player_by_id(self, player_id: str) -> Optional[Participant]:
        """Find a player by their ID"""
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def get_opponent(self, player_id: str) -> Optional[Participant]:
        """The other player in this game, if there is one"""
        for player in self.players:
            if player.id != player_id:
                return player
        return None

    def connected_players(self) -> List[Participant]:
        return [p for p in self.players if p.connected]

    def all_disconnected(self) -> bool:
        return all(not p.connected for p in self.players)

    def idle_for(self, now: datetime) -> timedelta:
        return now - self.last_activity

    # --- Membership ---
    def check_joinable(self) -> None:
        if len(self.players) >= 2:
            raise SessionFull(f"Game {self.game_id} is full")
        if self.status != GameStatus.WAITING or len(self.players) != 1:
            raise InvalidState(f"Game {self.game_id} is not waiting for a player")

    def add_player(self, player_id: str, connection_id: str, now: datetime) -> Participant:
        """
        Seat a second player in a waiting game and start it.
        The newcomer takes whichever symbol the remaining player does not hold.
        """
        self.check_joinable()

        symbol = self.players[0].symbol.other
        player = Participant(player_id, symbol, connection_id)
        self.players.append(player)
        self.status = GameStatus.PLAYING
        self.touch(now)
        return player

    def remove_player(self, player_id: str) -> Optional[Participant]:
        player = self.get_player_by_id(player_id)
        if player:
            self.players.remove(player)
            self.rematch_offers.discard(player_id)
            # Whoever stays behind now owns the game
            if player_id == self.creator_id and self.players:
                self.creator_id = self.players[0].id
        return player

    # --- Moves ---
    def apply_move(self, player_id: str, index: int, now: datetime) -> Outcome:
        """
        Place the player's symbol on the board.

        Validates everything before mutating, so a rejected move leaves the
        game untouched. Returns the outcome after the move.
        """
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < BOARD_SIZE:
            raise InvalidMove(f"Cell index must be between 0 and {BOARD_SIZE - 1}")

        player = self.get_player_by_id(player_id)
        if not player or not player.connected:
            raise InvalidMove("You are not an active player in this game")
        if self.status != GameStatus.PLAYING:
            raise InvalidMove("Game is not in progress")
        if self.turn != player.symbol:
            raise InvalidMove("It is not your turn")
        if self.board[index] is not None:
            raise InvalidMove("Cell already taken")

        self.board[index] = player.symbol
        self.turn = player.symbol.other
        self.touch(now)

        outcome = evaluate_board(self.board)
        if outcome is not None:
            self.status = GameStatus.FINISHED
            self.winner = outcome
        return outcome

    # --- Rematch ---
    def offer_rematch(self, player_id: str) -> bool:
        """
        Record a rematch offer.
        Returns True once every player in the game has offered.
        """
        if self.status != GameStatus.FINISHED:
            raise RematchNotPossible("Rematch is only possible once the game is over")
        if not self.get_player_by_id(player_id):
            raise RematchNotPossible("You are not a player in this game")
        if len(self.players) != 2:
            raise RematchNotPossible("Your opponent has left the game")

        self.rematch_offers.add(player_id)
        return all(p.id in self.rematch_offers for p in self.players)

    # --- Serialization ---
    def board_values(self) -> List[Optional[str]]:
        return [cell.value if cell else None for cell in self.board]

    def winner_value(self) -> Optional[str]:
        if self.winner is None or self.winner == DRAW:
            return self.winner
        return self.winner.value

    def to_dict(self, player_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Snapshot of the game, optionally from one player's perspective
        (adds that player's symbol).
        """
        state: Dict[str, Any] = {
            "gameId": self.game_id,
            "board": self.board_values(),
            "turn": self.turn.value,
            "status": self.status.value
        }
        if player_id:
            player = self.get_player_by_id(player_id)
            if player:
                state["symbol"] = player.symbol.value
        return state

    def __repr__(self):
        return f"<GameState {self.game_id} {self.game_type.value} {self.status.value} players={self.players}>"

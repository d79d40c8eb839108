from enum import Enum


class Symbol(Enum):
    X = "X"
    O = "O"

    @property
    def other(self) -> "Symbol":
        return Symbol.O if self is Symbol.X else Symbol.X


class GameType(Enum):
    CUSTOM = "custom"
    MATCHMAKING = "matchmaking"


class GameStatus(Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"

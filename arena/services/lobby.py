"""
Lobby listing: custom games that are open for a second player.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List

from arena.enums import GameStatus
from arena.services.game_state import GameState


def is_joinable(game: GameState, now: datetime, freshness: timedelta) -> bool:
    return (
        game.is_custom()
        and game.status == GameStatus.WAITING
        and len(game.players) == 1
        and game.idle_for(now) < freshness
    )


def available_custom_games(games: Iterable[GameState], now: datetime,
                           freshness: timedelta) -> List[Dict]:
    """Derive the lobby entries, oldest game first"""
    return [
        {
            "gameId": game.game_id,
            "creatorId": game.creator_id,
            "playerCount": len(game.players)
        }
        for game in games
        if is_joinable(game, now, freshness)
    ]


def lobby_message(games: Iterable[GameState], now: datetime, freshness: timedelta) -> Dict:
    return {
        "type": "lobbyUpdate",
        "games": available_custom_games(games, now, freshness)
    }

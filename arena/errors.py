"""
Errors raised by the game manager.

Every error is local to the request that caused it: the handler aborts before
touching any state and the server answers the offending connection with an
``error`` message carrying ``code`` and the exception text.
"""


class GameError(Exception):
    code = "GameError"

    def to_message(self) -> dict:
        return {
            "type": "error",
            "code": self.code,
            "message": str(self) or self.code
        }


class MalformedMessage(GameError):
    code = "MalformedMessage"


class MissingIdentity(GameError):
    code = "MissingIdentity"


class SessionNotFound(GameError):
    code = "SessionNotFound"


class SessionFull(GameError):
    code = "SessionFull"


class InvalidState(GameError):
    code = "InvalidState"


class InvalidMove(GameError):
    code = "InvalidMove"


class AlreadyQueuedOrInGame(GameError):
    code = "AlreadyQueuedOrInGame"


class NotQueued(GameError):
    code = "NotQueued"


class RematchNotPossible(GameError):
    code = "RematchNotPossible"

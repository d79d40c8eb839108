"""
Outcome evaluation for the fixed 3x3 grid.
"""

from typing import Optional, Sequence, Union

from arena.enums import Symbol

DRAW = "draw"

WIN_LINES = (
    (0, 1, 2), (3, 4, 5), (6, 7, 8),  # rows
    (0, 3, 6), (1, 4, 7), (2, 5, 8),  # columns
    (0, 4, 8), (2, 4, 6),             # diagonals
)

Outcome = Union[Symbol, str, None]


def evaluate_board(board: Sequence[Optional[Symbol]]) -> Outcome:
    """
    Evaluate a 9-cell board.

    Returns the Symbol holding any complete line, DRAW if the board is full
    without a winner, or None while the game is still open.
    """
    if len(board) != 9:
        raise ValueError(f"Board must have 9 cells (got {len(board)})")

    for a, b, c in WIN_LINES:
        if board[a] is not None and board[a] == board[b] == board[c]:
            return board[a]

    if all(cell is not None for cell in board):
        return DRAW
    return None

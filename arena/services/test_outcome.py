"""
Outcome evaluator tests
"""

import pytest

from arena.enums import Symbol
from arena.services.outcome import DRAW, WIN_LINES, evaluate_board

X, O = Symbol.X, Symbol.O


@pytest.mark.parametrize("line", WIN_LINES)
@pytest.mark.parametrize("symbol", [X, O])
def test_any_complete_line_wins(line, symbol):
    board = [None] * 9
    for index in line:
        board[index] = symbol
    assert evaluate_board(board) == symbol


def test_empty_board_has_no_result():
    assert evaluate_board([None] * 9) is None


def test_partial_board_without_line_has_no_result():
    board = [X, O, X,
             None, O, None,
             None, X, None]
    assert evaluate_board(board) is None


def test_full_board_without_line_is_draw():
    board = [X, O, X,
             X, O, O,
             O, X, X]
    assert evaluate_board(board) == DRAW


def test_win_on_last_cell_beats_draw():
    board = [X, O, X,
             O, X, O,
             O, X, X]
    assert evaluate_board(board) == X


def test_mixed_line_is_not_a_win():
    board = [X, X, O] + [None] * 6
    assert evaluate_board(board) is None


def test_evaluation_is_deterministic():
    board = [X, O, None, None, X, O, None, None, X]
    results = {evaluate_board(board) for _ in range(5)}
    assert results == {X}
    assert board == [X, O, None, None, X, O, None, None, X]


def test_wrong_board_size_rejected():
    with pytest.raises(ValueError):
        evaluate_board([None] * 8)

from dataclasses import dataclass
from enum import IntEnum
from typing import List, Sequence


class CellState(IntEnum):
    EMPTY = 0
    FILLED = 1
    MARKED = 2


@dataclass
class Clues:
    row_clues: List[List[int]]
    col_clues: List[List[int]]


@dataclass
class ClueCheck:
    solved: bool
    wrong_rows: int
    wrong_cols: int


def parse_solution(sol: str, width: int, height: int) -> List[int]:
    if len(sol) != width * height:
        raise ValueError("bad solution length")
    bits = []
    for ch in sol:
        if ch == "0":
            bits.append(0)
        elif ch == "1":
            bits.append(1)
        else:
            raise ValueError("bad solution encoding")
    return bits


def encode_solution(bits: Sequence[int]) -> str:
    return "".join("1" if b else "0" for b in bits)


def clues_for_line(bits: Sequence[int]) -> List[int]:
    out = []
    run = 0
    for b in bits:
        if b == 1:
            run += 1
        elif run:
            out.append(run)
            run = 0
    if run:
        out.append(run)
    # [0] is the canonical clue for a line with no runs
    return out or [0]


def _rows(cells: Sequence[int], width: int, height: int):
    for r in range(height):
        yield cells[r * width:(r + 1) * width]


def _cols(cells: Sequence[int], width: int, height: int):
    for c in range(width):
        yield [cells[r * width + c] for r in range(height)]


def compute_clues(bits: Sequence[int], width: int, height: int) -> Clues:
    return Clues(
        row_clues=[clues_for_line(line) for line in _rows(bits, width, height)],
        col_clues=[clues_for_line(line) for line in _cols(bits, width, height)],
    )


def validate_state_by_clues(state: Sequence[int], width: int, height: int,
                            row_clues: Sequence[Sequence[int]], col_clues: Sequence[Sequence[int]]) -> ClueCheck:
    """Check a player's grid against the target clues.

    Only FILLED cells count; MARKED and EMPTY are both empty for clue purposes.
    Any grid whose clues match is solved, even if it differs from the
    generator's bitmap (some puzzles have more than one solution).
    """
    filled = [1 if s == CellState.FILLED else 0 for s in state]
    wrong_rows = sum(
        1 for line, want in zip(_rows(filled, width, height), row_clues)
        if clues_for_line(line) != list(want)
    )
    wrong_cols = sum(
        1 for line, want in zip(_cols(filled, width, height), col_clues)
        if clues_for_line(line) != list(want)
    )
    return ClueCheck(solved=wrong_rows == 0 and wrong_cols == 0, wrong_rows=wrong_rows, wrong_cols=wrong_cols)

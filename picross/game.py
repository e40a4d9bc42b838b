from dataclasses import dataclass
from typing import List

from .clues import compute_clues, encode_solution
from .rng import XorShift32


MIN_DENSITY = 0.18
MAX_DENSITY = 0.82
MAX_TRIES = 50

# Markov fill probabilities: chance of filling a cell given the cell above
P_AFTER_EMPTY = 0.47
P_AFTER_FILLED = 0.7


@dataclass
class GeneratedPuzzle:
    width: int
    height: int
    seed: int
    solution: str
    row_clues: List[List[int]]
    col_clues: List[List[int]]


def puzzle_title(width: int, height: int, puzzle_id: str) -> str:
    return f"{width}x{height} {puzzle_id[:8]}"


def _fill(rng: XorShift32, width: int, height: int) -> List[int]:
    # columns outer, rows inner; `last` is the cell above in the same column
    bits = [0] * (width * height)
    for c in range(width):
        last = 0
        for r in range(height):
            prob = P_AFTER_EMPTY if last == 0 else P_AFTER_FILLED
            if c > 0 and height > 20 and bits[r * width + (c - 1)] == 1:
                prob = P_AFTER_FILLED
            last = 1 if rng.next01() < prob else 0
            bits[r * width + c] = last
    return bits


def gen_puzzle(width: int, height: int, seed: int) -> GeneratedPuzzle:
    """Generate a puzzle as a pure function of (width, height, seed).

    Vertical runs are favoured by the Markov fill. Candidates that are nearly
    empty or nearly full are rejected; after MAX_TRIES rejections the next
    candidate is accepted as is.
    """
    total = width * height
    min_filled = int(total * MIN_DENSITY)
    max_filled = int(total * MAX_DENSITY)
    rng = XorShift32(seed)

    bits = None
    for _ in range(MAX_TRIES):
        candidate = _fill(rng, width, height)
        if min_filled <= sum(candidate) <= max_filled:
            bits = candidate
            break
    if bits is None:
        bits = _fill(rng, width, height)

    clues = compute_clues(bits, width, height)
    return GeneratedPuzzle(
        width=width,
        height=height,
        seed=seed,
        solution=encode_solution(bits),
        row_clues=clues.row_clues,
        col_clues=clues.col_clues,
    )

from picross import game
from picross.clues import parse_solution, validate_state_by_clues
from picross.rng import XorShift32, random_u32


def test_xorshift_is_deterministic_and_in_range():
    a, b = XorShift32(42), XorShift32(42)
    seq_a = [a.next_u32() for _ in range(100)]
    seq_b = [b.next_u32() for _ in range(100)]
    assert seq_a == seq_b
    assert all(0 <= v <= 0xFFFFFFFF for v in seq_a)
    r = XorShift32(7)
    assert all(0.0 <= r.next01() < 1.0 for _ in range(1000))


def test_xorshift_zero_seed_does_not_stick():
    r = XorShift32(0)
    assert r.next_u32() != 0
    # seeds are reduced to 32 bits
    assert XorShift32(1 << 32).x == XorShift32(0).x


def test_random_u32_range():
    for _ in range(20):
        assert 0 <= random_u32() <= 0xFFFFFFFF


def test_gen_puzzle_is_deterministic():
    p1 = game.gen_puzzle(10, 10, 123456)
    p2 = game.gen_puzzle(10, 10, 123456)
    assert p1 == p2
    assert game.gen_puzzle(10, 10, 123457).seed == 123457


def test_gen_puzzle_shape_and_density():
    for seed in range(1, 40):
        p = game.gen_puzzle(5, 5, seed)
        assert len(p.solution) == 25
        assert len(p.row_clues) == 5 and len(p.col_clues) == 5
        ones = p.solution.count("1")
        assert 4 <= ones <= 20


def test_gen_puzzle_clues_match_solution():
    p = game.gen_puzzle(10, 10, 42)
    bits = parse_solution(p.solution, 10, 10)
    assert validate_state_by_clues(bits, 10, 10, p.row_clues, p.col_clues).solved


def test_gen_puzzle_tall():
    p = game.gen_puzzle(3, 25, 99)
    assert len(p.solution) == 75
    assert len(p.row_clues) == 25 and len(p.col_clues) == 3


def test_puzzle_title():
    assert game.puzzle_title(10, 10, "abcdef0123456789") == "10x10 abcdef01"


def test_next01_stays_below_one_at_the_top_of_the_range():
    class Saturated(XorShift32):
        def next_u32(self):
            return 0xFFFFFFFF

    assert Saturated(1).next01() < 1.0
    assert Saturated(1).next01() == 0xFFFFFFFF / 2 ** 32

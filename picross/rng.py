import secrets
from typing import Callable


MASK32 = 0xFFFFFFFF

# Called with no arguments, returns a u32 seed. Injected so puzzle creation is reproducible in tests.
SeedSource = Callable[[], int]


class XorShift32:
    """Deterministic 32-bit xorshift PRNG for reproducible puzzle generation."""

    def __init__(self, seed: int):
        # zero is a fixed point of xorshift
        self.x = (seed & MASK32) or 0x6D2B79F5

    def next_u32(self) -> int:
        x = self.x
        x ^= (x << 13) & MASK32
        x ^= x >> 17
        x ^= (x << 5) & MASK32
        self.x = x
        return x

    def next01(self) -> float:
        return self.next_u32() / 4294967296.0


def random_u32() -> int:
    return secrets.randbits(32)

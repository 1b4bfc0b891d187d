from __future__ import annotations

import zlib
from typing import Callable

import numpy as np

SeedFn = Callable[..., int]


def crc32_seed(*parts: object) -> int:
    """Unsigned CRC32 of the concatenated parts; stable across runs and platforms."""
    raw = "".join(str(part) for part in parts)
    return zlib.crc32(raw.encode("utf-8")) & 0xFFFFFFFF


def rng_for(seed_fn: SeedFn, *parts: object) -> np.random.Generator:
    return np.random.default_rng(seed_fn(*parts))


def rand_int(rng: np.random.Generator, low: int, high: int) -> int:
    """Inclusive on both ends."""
    return int(rng.integers(low, high + 1))

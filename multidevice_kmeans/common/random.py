import random

import numpy as np

# Host-side port of the xoroshiro128++ generator seeded through SplitMix64, the same
# algorithm as the one in numba.cuda.random (v<0.57) and the package `randomgen`.
# Reference resource about PRNG: https://prng.di.unimi.it/

# The initializers only need sequential draws, so the state lives in host memory and
# is advanced with python integers masked to 64 bits (numpy uint64 scalars warn on
# wrap-around).

_UINT64_MASK = (1 << 64) - 1

_SPLITMIX64_CONST_1 = 0x9E3779B97F4A7C15
_SPLITMIX64_CONST_2 = 0xBF58476D1CE4E5B9
_SPLITMIX64_CONST_3 = 0x94D049BB133111EB


def _splitmix64_next(state):
    new_state = z = (state + _SPLITMIX64_CONST_1) & _UINT64_MASK
    z = ((z ^ (z >> 30)) * _SPLITMIX64_CONST_2) & _UINT64_MASK
    z = ((z ^ (z >> 27)) * _SPLITMIX64_CONST_3) & _UINT64_MASK
    return new_state, z ^ (z >> 31)


def _rotl(x, k):
    """Left rotate x by k bits. x is expected to be a uint64 integer."""
    return ((x << k) | (x >> (64 - k))) & _UINT64_MASK


class Xoroshiro128pp:
    """Explicit random state for the centroid initializers.

    One instance is created per run from the caller-supplied seed and is passed to
    every function that draws random numbers, so that two runs with the same seed
    pick the same centroids regardless of what else happens in the process.

    Parameters
    ----------
    seed : int or None
        Starting seed. Small seeds are expanded with SplitMix64 so that they don't
        result in a predictable initial sequence. If None, a seed is drawn from the
        `random` module.
    """

    def __init__(self, seed=None):
        if seed is None:
            seed = random.randint(0, np.iinfo(np.int64).max - 1)

        if hasattr(seed, "randint"):
            seed = seed.randint(0, np.iinfo(np.int64).max - 1)

        self.seed = int(seed) & _UINT64_MASK

        splitmix64_state = self.seed
        splitmix64_state, s0 = _splitmix64_next(splitmix64_state)
        _, s1 = _splitmix64_next(splitmix64_state)
        self._state = [s0, s1]

    def random_raw(self):
        """Return the next pseudo-random uint64 value, as a python int.

        Similar to numpy.random.BitGenerator.random_raw(size=1)."""
        s0, s1 = self._state
        result = (_rotl((s0 + s1) & _UINT64_MASK, 17) + s0) & _UINT64_MASK

        s1 ^= s0
        self._state[0] = _rotl(s0, 49) ^ s1 ^ ((s1 << 21) & _UINT64_MASK)
        self._state[1] = _rotl(s1, 28)

        return result

    def uniform(self):
        """Return one random float64 in [0, 1)"""
        return (self.random_raw() >> 11) * (1.0 / (1 << 53))

    def randint(self, high):
        """Return one random integer in [0, high)"""
        if high <= 0:
            raise ValueError(f"Expected a strictly positive upper bound, got {high}")
        return self.random_raw() % high

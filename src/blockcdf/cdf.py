from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
from functools import reduce
from typing import Sequence

import numpy as np


class GridMismatchError(ValueError):
    pass


def grid_length(time_limit: Decimal, step: Decimal) -> int:
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    if time_limit < 0:
        raise ValueError(f"time_limit must be non-negative, got {time_limit}")
    return int((time_limit / step).to_integral_value(rounding=ROUND_FLOOR)) + 1


def time_grid(time_limit: Decimal, step: Decimal) -> np.ndarray:
    return np.array([float(step * i) for i in range(grid_length(time_limit, step))])


def _same_length(cdfs: Sequence[np.ndarray]) -> int:
    if not cdfs:
        raise ValueError("at least one CDF is required")
    lengths = {len(c) for c in cdfs}
    if len(lengths) != 1:
        raise GridMismatchError(f"CDFs are sampled on different grids: lengths {sorted(lengths)}")
    return lengths.pop()


def mixture(cdfs: Sequence[np.ndarray], probs: Sequence[float]) -> np.ndarray:
    if len(cdfs) != len(probs):
        raise ValueError(f"{len(cdfs)} CDFs but {len(probs)} probabilities")
    n = _same_length(cdfs)
    out = np.zeros(n)
    for p, cdf in zip(probs, cdfs):
        out += p * np.asarray(cdf, dtype=float)
    return out


def product(cdfs: Sequence[np.ndarray]) -> np.ndarray:
    n = _same_length(cdfs)
    out = np.ones(n)
    for cdf in cdfs:
        out *= np.asarray(cdf, dtype=float)
    return out


def convolve(first: np.ndarray, second: np.ndarray) -> np.ndarray:
    """CDF of the sum of two independent durations, by the trapezoidal rule.

    The mass ``first[0]`` sitting at time zero is carried over as ``first[0] * second``.
    """
    n = _same_length([first, second])
    f = np.asarray(first, dtype=float)
    g = np.asarray(second, dtype=float)
    out = f[0] * g
    if n > 1:
        increments = np.diff(f)
        midpoints = (g[1:] + g[:-1]) * 0.5
        out[1:] += np.convolve(increments, midpoints)[: n - 1]
    return out


def convolve_all(cdfs: Sequence[np.ndarray]) -> np.ndarray:
    _same_length(cdfs)
    return reduce(convolve, cdfs)


def expected_value(cdf: np.ndarray, step: Decimal) -> float:
    survival = 1.0 - np.asarray(cdf, dtype=float)
    if len(survival) < 2:
        return 0.0
    return float(step) * float(np.sum(survival[1:] + survival[:-1]) * 0.5)


def quantile(cdf: np.ndarray, step: Decimal, q: float) -> float | None:
    if not 0.0 < q <= 1.0:
        raise ValueError(f"quantile level must be in (0, 1], got {q}")
    reached = np.nonzero(np.asarray(cdf, dtype=float) >= q)[0]
    if len(reached) == 0:
        return None
    return float(step * int(reached[0]))


def ks_distance(a: np.ndarray, b: np.ndarray) -> float:
    _same_length([a, b])
    return float(np.max(np.abs(np.asarray(a, dtype=float) - np.asarray(b, dtype=float))))


def area_distance(a: np.ndarray, b: np.ndarray, step: Decimal) -> float:
    _same_length([a, b])
    gap = np.abs(np.asarray(a, dtype=float) - np.asarray(b, dtype=float))
    if len(gap) < 2:
        return 0.0
    return float(step) * float(np.sum(gap[1:] + gap[:-1]) * 0.5)

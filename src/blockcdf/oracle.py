from __future__ import annotations

import logging
from decimal import Decimal
from typing import Protocol

import numpy as np

from .cdf import time_grid
from .features import DeterministicFeature, TimingFeature, UniformFeature
from .graph import Activity, ActivityKind, Dag

logger = logging.getLogger(__name__)

_NEGLIGIBLE = 1e-12


class OracleError(RuntimeError):
    pass


class TransientOracle(Protocol):
    def analyze_exact(self, block: Activity, time_limit: Decimal, step: Decimal, error: Decimal) -> np.ndarray: ...


class Approximator(Protocol):
    def fit(
        self, cdf: np.ndarray, lower: float, upper: float, step: Decimal
    ) -> list[tuple[float, TimingFeature]]: ...


class MonteCarloOracle:
    def __init__(self, runs: int = 10000, seed: int = 0) -> None:
        if runs < 1:
            raise ValueError(f"runs must be >= 1, got {runs}")
        self.runs = runs
        self.seed = seed

    def sample(self, block: Activity, rng: np.random.Generator, size: int) -> np.ndarray:
        kind = block.kind
        if kind == ActivityKind.simple:
            return block.sample(rng, size)  # type: ignore[attr-defined]
        if kind == ActivityKind.sequence:
            return np.sum([self.sample(a, rng, size) for a in block.nested()], axis=0)
        if kind == ActivityKind.and_:
            return np.max([self.sample(a, rng, size) for a in block.nested()], axis=0)
        if kind == ActivityKind.xor:
            probs = np.asarray(block.probs, dtype=float)  # type: ignore[attr-defined]
            branch = rng.choice(len(probs), size=size, p=probs / probs.sum())
            out = np.empty(size)
            for i, alternative in enumerate(block.nested()):
                mask = branch == i
                out[mask] = self.sample(alternative, rng, int(mask.sum()))
            return out
        if kind == ActivityKind.repeat:
            body = block.nested()[0]
            probability = block.probability  # type: ignore[attr-defined]
            out = self.sample(body, rng, size)
            again = rng.random(size) < probability
            while again.any():
                out[again] += self.sample(body, rng, int(again.sum()))
                again[again] = rng.random(int(again.sum())) < probability
            return out
        if kind == ActivityKind.dag:
            return self._sample_dag(block, rng, size)  # type: ignore[arg-type]
        raise OracleError(f"Unsupported activity kind: {kind}")

    def _sample_dag(self, dag: Dag, rng: np.random.Generator, size: int) -> np.ndarray:
        finish: dict[int, np.ndarray] = {}
        for h in [dag.begin, *dag.inner_handles(), dag.end]:
            preds = dag.pre(h)
            start = np.max([finish[p] for p in preds], axis=0) if preds else np.zeros(size)
            finish[h] = start + self.sample(dag.activity(h), rng, size)
        return finish[dag.end]

    def simulate(self, block: Activity, time_limit: Decimal, step: Decimal, runs: int) -> np.ndarray:
        rng = np.random.default_rng(self.seed)
        samples = np.sort(self.sample(block, rng, runs))
        times = time_grid(time_limit, step)
        return np.searchsorted(samples, times, side="right") / float(runs)

    def analyze_exact(self, block: Activity, time_limit: Decimal, step: Decimal, error: Decimal) -> np.ndarray:
        logger.debug("Simulating %s with %d runs", block.name, self.runs)
        return self.simulate(block, time_limit, step, self.runs)


class UniformMixtureApproximator:
    def __init__(self, pieces: int = 10) -> None:
        if pieces < 1:
            raise ValueError(f"pieces must be >= 1, got {pieces}")
        self.pieces = pieces

    def fit(self, cdf: np.ndarray, lower: float, upper: float, step: Decimal) -> list[tuple[float, TimingFeature]]:
        if upper < lower:
            raise ValueError(f"empty support [{lower}, {upper}]")
        if upper == lower:
            return [(1.0, DeterministicFeature(value=Decimal(str(lower))))]

        values = np.maximum.accumulate(np.clip(np.asarray(cdf, dtype=float), 0.0, 1.0))
        times = np.array([float(step * i) for i in range(len(values))])
        points = np.linspace(lower, upper, self.pieces + 1)
        levels = np.interp(points, times, values)

        out: list[tuple[float, TimingFeature]] = []
        if levels[0] > _NEGLIGIBLE:
            out.append((float(levels[0]), DeterministicFeature(value=Decimal(str(lower)))))
        for left, right, mass in zip(points[:-1], points[1:], np.diff(levels)):
            if mass > _NEGLIGIBLE:
                out.append((float(mass), UniformFeature(eft=Decimal(str(left)), lft=Decimal(str(right)))))
        residual = 1.0 - float(levels[-1])
        if residual > _NEGLIGIBLE:
            out.append((residual, DeterministicFeature(value=Decimal(str(upper)))))
        return out

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal

import numpy as np

from .cdf import GridMismatchError, convolve_all, grid_length, mixture, product, time_grid
from .complexity import measures, simplified_measures
from .config import AnalysisConfig, InnerBlockScope
from .features import INFINITY
from .graph import Activity, ActivityKind, Dag, GraphStructureError, Repeat, Sequence, Simple, validate
from .oracle import Approximator, MonteCarloOracle, OracleError, TransientOracle, UniformMixtureApproximator
from .report import AnalysisReport, AnalysisStep, CdfSummary, ReferenceComparison, ReportPaths, StepAction

logger = logging.getLogger(__name__)


class HeuristicEngine:
    def __init__(
        self,
        config: AnalysisConfig,
        oracle: TransientOracle | None = None,
        approximator: Approximator | None = None,
    ) -> None:
        self.config = config
        self.oracle = oracle or MonteCarloOracle(runs=config.simulation.runs, seed=config.simulation.seed)
        self.approximator = approximator or UniformMixtureApproximator(pieces=config.approximation.pieces)
        self.steps: list[AnalysisStep] = []
        self._trees: list[Activity] = []

    def analyze(
        self,
        block: Activity,
        time_limit: Decimal | None = None,
        step: Decimal | None = None,
        error: Decimal | None = None,
    ) -> np.ndarray:
        validate(block)
        return self._analyze_tree(
            block,
            self.config.time_limit if time_limit is None else time_limit,
            self.config.step if step is None else step,
            self.config.error if error is None else error,
            0,
        )

    def _analyze_tree(self, tree: Activity, time_limit: Decimal, step: Decimal, error: Decimal, depth: int) -> np.ndarray:
        self._trees.append(tree)
        try:
            return self._analyze(tree, time_limit, step, error, depth)
        finally:
            self._trees.pop()

    def run(
        self,
        model: Activity,
        reference: np.ndarray | None = None,
        paths: dict[str, str | None] | None = None,
    ) -> AnalysisReport:
        self.steps = []
        started = time.perf_counter()
        cdf = self.analyze(model)
        elapsed = time.perf_counter() - started

        step = self.config.step
        notes = ["Fork-join blocks are composed as products of branch CDFs, assuming independent branches."]
        if cdf[-1] < 1.0:
            notes.append("CDF does not reach 1 within time_limit; expected_time is truncated at time_limit.")
        comparison = None
        if reference is not None:
            comparison = ReferenceComparison.between(cdf, np.asarray(reference, dtype=float), step)

        return AnalysisReport(
            generated_at=datetime.now(timezone.utc).isoformat(),
            model=model.name,
            time_limit=self.config.time_limit,
            step=step,
            error=self.config.error,
            c_threshold=self.config.c_threshold,
            r_threshold=self.config.r_threshold,
            paths=ReportPaths.model_validate(paths) if paths is not None else None,
            times=time_grid(self.config.time_limit, step).tolist(),
            cdf=cdf.tolist(),
            summary=CdfSummary.from_cdf(cdf, step),
            steps=list(self.steps),
            elapsed_s=elapsed,
            comparison=comparison,
            notes=notes,
        )

    def _log(self, depth: int, message: str, *args: object) -> None:
        level = logging.INFO if self.config.verbose else logging.DEBUG
        logger.log(level, "---" * (depth + 1) + " " + message, *args)

    def _record(self, action: StepAction, block: Activity, depth: int, target: Activity | None = None) -> AnalysisStep:
        current = measures(block)
        simplified = simplified_measures(block)
        entry = AnalysisStep(
            action=action,
            block=block.name,
            depth=depth,
            c=current.c,
            r=current.r,
            simplified_c=simplified.c,
            simplified_r=simplified.r,
            target=target.name if target is not None else None,
        )
        self.steps.append(entry)
        return entry

    def _analyze(self, block: Activity, time_limit: Decimal, step: Decimal, error: Decimal, depth: int) -> np.ndarray:
        kind = block.kind
        if kind == ActivityKind.simple:
            self._record(StepAction.closed_form, block, depth)
            return block.cdf(time_grid(time_limit, step))  # type: ignore[attr-defined]
        if kind == ActivityKind.xor:
            return self.numerical_xor(block, time_limit, step, error, depth)
        if kind == ActivityKind.and_:
            return self.numerical_and(block, time_limit, step, error, depth)
        if kind == ActivityKind.sequence:
            return self.numerical_seq(block, time_limit, step, error, depth)

        thresholds = (self.config.c_threshold, self.config.r_threshold)
        if kind == ActivityKind.repeat:
            current = measures(block)
            simplified = simplified_measures(block)
            if current.c != simplified.c and current.r != simplified.r:
                if self.config.decomposition_guard.exceeds(current.c, current.r, *thresholds):
                    self._log(depth, "Performing REP inner block analysis on %s", block.name)
                    return self.repeat_inner_block_analysis(block, time_limit, step, error, depth)  # type: ignore[arg-type]
            return self.oracle_analysis(block, time_limit, step, error, depth)

        if kind == ActivityKind.dag:
            self._log(depth, "Searching repetitions in DAG %s", block.name)
            self.replace_repeats(block, time_limit, step, error, depth)

            current = measures(block)
            simplified = simplified_measures(block)
            if current != simplified and self.config.decomposition_guard.exceeds(current.c, current.r, *thresholds):
                self._log(depth, "Performing DAG inner block analysis on %s", block.name)
                return self.dag_inner_block_analysis(block, time_limit, step, error, depth)  # type: ignore[arg-type]
            if self.config.replication_guard.exceeds(simplified.c, simplified.r, *thresholds):
                self._log(depth, "Performing block replication on %s", block.name)
                return self.inner_block_replication_analysis(block, time_limit, step, error, depth)  # type: ignore[arg-type]
            return self.oracle_analysis(block, time_limit, step, error, depth)

        raise ValueError(f"Unsupported activity kind: {kind}")

    def _timed(self, entry: AnalysisStep, started: float) -> None:
        entry.seconds = time.perf_counter() - started

    def numerical_xor(self, block: Activity, time_limit: Decimal, step: Decimal, error: Decimal, depth: int) -> np.ndarray:
        self._log(depth, "Numerical XOR analysis of %s", block.name)
        entry = self._record(StepAction.xor, block, depth)
        started = time.perf_counter()
        cdfs = [self._analyze(a, time_limit, step, error, depth + 1) for a in block.nested()]
        out = mixture(cdfs, block.probs)  # type: ignore[attr-defined]
        self._timed(entry, started)
        self._log(depth, "Analysis of %s done in %.3f seconds", block.name, entry.seconds)
        return out

    def numerical_and(self, block: Activity, time_limit: Decimal, step: Decimal, error: Decimal, depth: int) -> np.ndarray:
        self._log(depth, "Numerical AND analysis of %s", block.name)
        entry = self._record(StepAction.and_, block, depth)
        started = time.perf_counter()
        out = product([self._analyze(a, time_limit, step, error, depth + 1) for a in block.nested()])
        self._timed(entry, started)
        self._log(depth, "Analysis of %s done in %.3f seconds", block.name, entry.seconds)
        return out

    def numerical_seq(self, block: Activity, time_limit: Decimal, step: Decimal, error: Decimal, depth: int) -> np.ndarray:
        self._log(depth, "Numerical SEQ analysis of %s", block.name)
        entry = self._record(StepAction.sequence, block, depth)
        started = time.perf_counter()
        out = convolve_all([self._analyze(a, time_limit, step, error, depth + 1) for a in block.nested()])
        self._timed(entry, started)
        self._log(depth, "Analysis of %s done in %.3f seconds", block.name, entry.seconds)
        return out

    def oracle_analysis(self, block: Activity, time_limit: Decimal, step: Decimal, error: Decimal, depth: int) -> np.ndarray:
        self._log(depth, "Oracle analysis of block %s", block.name)
        entry = self._record(StepAction.oracle, block, depth)
        started = time.perf_counter()
        try:
            cdf = self.oracle.analyze_exact(block, time_limit, step, error)
        except Exception as exc:  # noqa: BLE001
            raise OracleError(f"Transient analysis of {block.name} failed: {exc}") from exc
        cdf = np.asarray(cdf, dtype=float)
        expected = grid_length(time_limit, step)
        if cdf.shape != (expected,):
            raise GridMismatchError(
                f"Transient analysis of {block.name} returned {cdf.size} points, expected {expected}"
            )
        self._timed(entry, started)
        self._log(depth, "Analysis done in %.3f seconds", entry.seconds)
        return cdf

    def _horizon(self, block: Activity, time_limit: Decimal) -> Decimal:
        return time_limit if block.lft == INFINITY else block.lft

    def _inner_step(self, horizon: Decimal) -> Decimal:
        if self.config.inner_step is not None:
            return self.config.inner_step
        magnitude = Decimal(1)
        aux = horizon
        while aux > 10:
            magnitude *= 10
            aux /= 10
        return magnitude * Decimal("0.01")

    def _surrogate(self, block: Activity, cdf: np.ndarray, horizon: Decimal, step: Decimal) -> Simple:
        name = block.name + "_N"
        if self._trees and any(a.name == name for a in self._trees[-1].walk()):
            raise GraphStructureError(f"{self._trees[-1].name}: surrogate name {name} is already taken")
        fitted = self.approximator.fit(cdf, float(block.eft), float(horizon), step)
        return Simple(name, [feature for _, feature in fitted], [weight for weight, _ in fitted])

    def repeat_inner_block_analysis(
        self, block: Repeat, time_limit: Decimal, step: Decimal, error: Decimal, depth: int
    ) -> np.ndarray:
        body = block.body
        entry = self._record(StepAction.repeat_body_replaced, block, depth, target=body)
        started = time.perf_counter()
        horizon = self._horizon(body, time_limit)
        cdf = self._analyze(body, horizon, step, error, depth + 1)
        block.replace_body(self._surrogate(body, cdf, horizon, step))
        block.reset_complexity_measure()
        self._timed(entry, started)
        self._log(depth, "%s has been approximated", body.name)
        return self._analyze(block, time_limit, step, error, depth)

    def replace_repeats(self, block: Activity, time_limit: Decimal, step: Decimal, error: Decimal, depth: int) -> int:
        found: list[tuple[Activity, Activity]] = []
        pending = [block]
        while pending:
            parent = pending.pop()
            for child in parent.nested():
                if child.kind == ActivityKind.repeat:
                    found.append((parent, child))
                else:
                    pending.append(child)

        for parent, repeat in found:
            self._log(depth + 1, "Repetition found! It's %s", repeat.name)
            entry = self._record(StepAction.repeat_replaced, repeat, depth + 1)
            started = time.perf_counter()
            horizon = min(time_limit, repeat.lft)
            cdf = self._analyze(repeat, time_limit, step, error, depth + 2)
            parent.replace_child(repeat, self._surrogate(repeat, cdf, horizon, step))
            block.reset_complexity_measure()
            self._timed(entry, started)
            self._log(depth + 1, "Block %s replaced", repeat.name)
        return len(found)

    def _candidates(self, block: Activity) -> list[Activity]:
        complex_children = [a for a in block.nested() if measures(a).c > 1 or measures(a).r > 1]
        return sorted(complex_children, key=lambda a: tuple(measures(a)))

    def _descends_into(self, block: Activity) -> bool:
        if self.config.inner_block_scope == InnerBlockScope.dag:
            return block.kind == ActivityKind.dag
        return bool(block.nested())

    def deepest_complex_block(self, block: Activity) -> tuple[Activity, Activity] | None:
        candidates = self._candidates(block)
        if not candidates:
            return None
        target = candidates[-1]
        current = measures(target)
        if self._descends_into(target) and self.config.inner_block_guard.exceeds(
            current.c, current.r, self.config.c_threshold, self.config.r_threshold
        ):
            deeper = self.deepest_complex_block(target)
            if deeper is not None:
                return deeper
        return block, target

    def simplify_once(self, block: Activity, time_limit: Decimal, error: Decimal, depth: int) -> Activity | None:
        located = self.deepest_complex_block(block)
        if located is None:
            return None
        parent, target = located
        horizon = self._horizon(target, time_limit)
        inner_step = self._inner_step(horizon)
        self._log(depth + 1, "Block analysis: choose inner block %s", target.name)
        cdf = self._analyze(target, horizon, inner_step, error, depth + 1)
        parent.replace_child(target, self._surrogate(target, cdf, horizon, inner_step))
        block.reset_complexity_measure()
        self._log(depth + 1, "Approximated inner block %s", target.name)
        return target

    def dag_inner_block_analysis(
        self, block: Dag, time_limit: Decimal, step: Decimal, error: Decimal, depth: int
    ) -> np.ndarray:
        entry = self._record(StepAction.inner_block, block, depth)
        started = time.perf_counter()
        target = self.simplify_once(block, time_limit, error, depth)
        self._timed(entry, started)
        if target is None:
            return self.oracle_analysis(block, time_limit, step, error, depth)
        entry.target = target.name
        return self._analyze(block, time_limit, step, error, depth)

    def inner_block_replication_analysis(
        self, block: Dag, time_limit: Decimal, step: Decimal, error: Decimal, depth: int
    ) -> np.ndarray:
        ranked: list[tuple[tuple[int, int], int]] = []
        for h in block.pre(block.end):
            prefix = block.copy_recursive("_before_" + block.activity(h).name, block.begin, h)
            ranked.append((tuple(measures(prefix)), h))
        heaviest = sorted(ranked, key=lambda item: item[0])[-1][1]
        last = block.activity(heaviest)

        covered = block.activities_between(block.begin, heaviest)
        if set(block.inner_handles()) <= covered:
            return self._split_tail(block, heaviest, time_limit, step, error, depth)

        self._record(StepAction.replication, block, depth, target=last)
        self._log(depth + 1, "Replicated block before %s", last.name)
        nested = block.nest(heaviest)
        nested.set_bounds(nested.low(), nested.upp())
        block.reset_complexity_measure()
        return self._analyze_tree(nested, time_limit, step, error, depth)

    def _split_tail(
        self, block: Dag, handle: int, time_limit: Decimal, step: Decimal, error: Decimal, depth: int
    ) -> np.ndarray:
        last = block.activity(handle)
        preds = [p for p in block.pre(handle) if p != block.begin]
        self._record(StepAction.tail_split, block, depth, target=last)
        if not preds:
            return self._analyze(last, time_limit, step, error, depth + 1)

        suffix = "_before_" + last.name
        prefix = block.copy_recursive(suffix, block.begin, handle)
        copied = prefix.handle(last.name + suffix)
        kept = [prefix.handle(block.activity(p).name + suffix) for p in preds]
        prefix.remove_between(copied, copied, remove_shared=True)
        prefix.add_precondition(prefix.end, *kept)
        self._log(depth + 1, "Split %s before its last activity %s", block.name, last.name)
        tail = Sequence(block.name + "_tail", [prefix, last])
        return self._analyze_tree(tail, time_limit, step, error, depth)

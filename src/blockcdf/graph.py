from __future__ import annotations

from collections import Counter
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Iterator, TypeVar

import networkx as nx
import numpy as np
from pydantic import BaseModel

from .features import (
    INFINITY,
    DeterministicFeature,
    ExponentialFeature,
    TimingFeature,
    UniformFeature,
)


class GraphStructureError(ValueError):
    pass


class ActivityKind(str, Enum):
    simple = "simple"
    sequence = "sequence"
    and_ = "and"
    xor = "xor"
    repeat = "repeat"
    dag = "dag"


DAG_SHAPED = frozenset({ActivityKind.sequence, ActivityKind.and_, ActivityKind.dag})

_A = TypeVar("_A", bound="Activity")


class Activity:
    kind: ActivityKind

    def __init__(self, name: str) -> None:
        if not name:
            raise GraphStructureError("activity name must not be empty")
        self.name = name
        self._eft: Decimal | None = None
        self._lft: Decimal | None = None
        self._revision = 0
        self._measure_cache: dict[str, tuple[tuple, int]] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    @property
    def eft(self) -> Decimal:
        return self._eft if self._eft is not None else self.low()

    @property
    def lft(self) -> Decimal:
        return self._lft if self._lft is not None else self.upp()

    def set_bounds(self, eft: Decimal, lft: Decimal) -> None:
        if eft > lft:
            raise GraphStructureError(f"{self.name}: EFT {eft} exceeds LFT {lft}")
        self._eft = eft
        self._lft = lft

    def low(self) -> Decimal:
        raise NotImplementedError

    def upp(self) -> Decimal:
        raise NotImplementedError

    def nested(self) -> list[Activity]:
        return []

    def walk(self) -> Iterator[Activity]:
        yield self
        for child in self.nested():
            yield from child.walk()

    def replace_child(self, old: Activity, new: Activity) -> None:
        raise GraphStructureError(f"{self.name} has no nested activity {old.name}")

    def copy_recursive(self, suffix: str) -> Activity:
        raise NotImplementedError

    def is_well_nested(self) -> bool:
        return all(child.is_well_nested() for child in self.nested())

    def fingerprint(self) -> tuple:
        return (self.kind.value, self.name, self._revision, tuple(c.fingerprint() for c in self.nested()))

    def reset_complexity_measure(self) -> None:
        for activity in self.walk():
            activity._measure_cache.clear()

    def _touch(self) -> None:
        self._revision += 1
        self._measure_cache.clear()

    def _keep_bounds(self, copy: _A) -> _A:
        copy._eft = self._eft
        copy._lft = self._lft
        return copy

    def _adopt(self, old: Activity, new: Activity) -> None:
        if old is new:
            raise GraphStructureError(f"{self.name}: cannot replace {old.name} with itself")
        new.set_bounds(old.eft, old.lft)
        self._touch()


class Simple(Activity):
    kind = ActivityKind.simple

    def __init__(
        self,
        name: str,
        features: Iterable[TimingFeature] | TimingFeature,
        weights: Iterable[float] | None = None,
    ) -> None:
        super().__init__(name)
        features = [features] if isinstance(features, BaseModel) else list(features)
        if not features:
            raise GraphStructureError(f"{name}: at least one timing feature is required")
        weights = [1.0] * len(features) if weights is None else [float(w) for w in weights]
        if len(weights) != len(features):
            raise GraphStructureError(f"{name}: each feature must have one weight")
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise GraphStructureError(f"{name}: weights must be non-negative with a positive sum")
        total = sum(weights)
        self.features: list[TimingFeature] = features
        self.weights: list[float] = [w / total for w in weights]

    @classmethod
    def uniform(cls, name: str, eft: Any, lft: Any) -> Simple:
        return cls(name, UniformFeature(eft=Decimal(str(eft)), lft=Decimal(str(lft))))

    @classmethod
    def deterministic(cls, name: str, value: Any) -> Simple:
        return cls(name, DeterministicFeature(value=Decimal(str(value))))

    @classmethod
    def exponential(cls, name: str, rate: float, shift: Any = 0) -> Simple:
        return cls(name, ExponentialFeature(rate=rate, shift=Decimal(str(shift))))

    def low(self) -> Decimal:
        return min(f.eft for f in self.features)

    def upp(self) -> Decimal:
        return max(f.lft for f in self.features)

    def cdf(self, times: np.ndarray) -> np.ndarray:
        out = np.zeros(len(times))
        for weight, feature in zip(self.weights, self.features):
            out += weight * feature.cdf(times)
        return out

    def sample(self, rng: np.random.Generator, size: int) -> np.ndarray:
        if len(self.features) == 1:
            return self.features[0].sample(rng, size)
        component = rng.choice(len(self.features), size=size, p=self.weights)
        out = np.empty(size)
        for i, feature in enumerate(self.features):
            mask = component == i
            out[mask] = feature.sample(rng, int(mask.sum()))
        return out

    def copy_recursive(self, suffix: str) -> Simple:
        return self._keep_bounds(Simple(self.name + suffix, list(self.features), list(self.weights)))

    def is_well_nested(self) -> bool:
        return True

    def fingerprint(self) -> tuple:
        return (self.kind.value, self.name, self._revision)


Analytical = Simple


class _Composite(Activity):
    label = "block"

    def __init__(self, name: str, activities: Iterable[Activity]) -> None:
        super().__init__(name)
        self.activities: list[Activity] = list(activities)
        if not self.activities:
            raise GraphStructureError(f"{self.label} {name} cannot be empty")

    def nested(self) -> list[Activity]:
        return list(self.activities)

    def replace_child(self, old: Activity, new: Activity) -> None:
        for i, child in enumerate(self.activities):
            if child is old:
                self._adopt(old, new)
                self.activities[i] = new
                return
        super().replace_child(old, new)


class Sequence(_Composite):
    kind = ActivityKind.sequence
    label = "Sequence"

    def low(self) -> Decimal:
        return sum((a.eft for a in self.activities), Decimal(0))

    def upp(self) -> Decimal:
        return sum((a.lft for a in self.activities), Decimal(0))

    def copy_recursive(self, suffix: str) -> Sequence:
        copy = Sequence(self.name + suffix, [a.copy_recursive(suffix) for a in self.activities])
        return self._keep_bounds(copy)

    def as_dag(self) -> Dag:
        dag = Dag(self.name)
        prev = dag.begin
        for activity in self.activities:
            prev = dag.add(activity, prev)
        dag.add_precondition(dag.end, prev)
        return dag


class And(_Composite):
    kind = ActivityKind.and_
    label = "Fork-join"

    def low(self) -> Decimal:
        return max(a.eft for a in self.activities)

    def upp(self) -> Decimal:
        return max(a.lft for a in self.activities)

    def copy_recursive(self, suffix: str) -> And:
        copy = And(self.name + suffix, [a.copy_recursive(suffix) for a in self.activities])
        return self._keep_bounds(copy)

    def as_dag(self) -> Dag:
        dag = Dag(self.name)
        for activity in self.activities:
            dag.add_precondition(dag.end, dag.add(activity, dag.begin))
        return dag


class Xor(Activity):
    kind = ActivityKind.xor

    def __init__(self, name: str, alternatives: Iterable[Activity], probs: Iterable[float]) -> None:
        super().__init__(name)
        self.alternatives: list[Activity] = list(alternatives)
        self.probs: list[float] = [float(p) for p in probs]
        if len(self.alternatives) != len(self.probs):
            raise GraphStructureError(f"{name}: each alternative must have one probability")
        if any(p < 0 for p in self.probs):
            raise GraphStructureError(f"{name}: probabilities must be non-negative, got {self.probs}")
        if not self.alternatives:
            raise GraphStructureError(f"Xor {name} cannot be empty")

    def low(self) -> Decimal:
        return min(a.eft for a in self.alternatives)

    def upp(self) -> Decimal:
        return max(a.lft for a in self.alternatives)

    def nested(self) -> list[Activity]:
        return list(self.alternatives)

    def replace_child(self, old: Activity, new: Activity) -> None:
        for i, child in enumerate(self.alternatives):
            if child is old:
                self._adopt(old, new)
                self.alternatives[i] = new
                return
        super().replace_child(old, new)

    def copy_recursive(self, suffix: str) -> Xor:
        copy = Xor(self.name + suffix, [a.copy_recursive(suffix) for a in self.alternatives], list(self.probs))
        return self._keep_bounds(copy)

    def fingerprint(self) -> tuple:
        return super().fingerprint() + (tuple(self.probs),)


class Repeat(Activity):
    kind = ActivityKind.repeat

    def __init__(self, name: str, probability: float, body: Activity) -> None:
        super().__init__(name)
        if not 0.0 <= probability < 1.0:
            raise GraphStructureError(f"{name}: repeat probability must be in [0, 1), got {probability}")
        self.probability = float(probability)
        self.body = body

    def low(self) -> Decimal:
        return self.body.eft

    def upp(self) -> Decimal:
        return INFINITY

    def nested(self) -> list[Activity]:
        return [self.body]

    def replace_body(self, new: Activity) -> None:
        self._adopt(self.body, new)
        self.body = new

    def replace_child(self, old: Activity, new: Activity) -> None:
        if old is not self.body:
            super().replace_child(old, new)
        self.replace_body(new)

    def copy_recursive(self, suffix: str) -> Repeat:
        copy = Repeat(self.name + suffix, self.probability, self.body.copy_recursive(suffix))
        return self._keep_bounds(copy)

    def is_well_nested(self) -> bool:
        return False

    def fingerprint(self) -> tuple:
        return super().fingerprint() + (self.probability,)


class Dag(Activity):
    kind = ActivityKind.dag

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self._graph = nx.DiGraph()
        self._next_handle = 0
        self.begin = self._insert(Simple.deterministic(f"{name}_BEGIN", 0))
        self.end = self._insert(Simple.deterministic(f"{name}_END", 0))

    @staticmethod
    def empty(name: str) -> Dag:
        return Dag(name)

    @staticmethod
    def sequence(name: str, *activities: Activity) -> Sequence:
        return Sequence(name, activities)

    @staticmethod
    def fork_join(name: str, *activities: Activity) -> And:
        return And(name, activities)

    def _insert(self, activity: Activity) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._graph.add_node(handle, activity=activity)
        return handle

    def _check_handle(self, handle: int) -> None:
        if handle not in self._graph:
            raise GraphStructureError(f"{self.name}: unknown activity handle {handle}")

    def add(self, activity: Activity, *pre: int) -> int:
        if any(self.activity(h).name == activity.name for h in self._graph):
            raise GraphStructureError(f"{self.name}: repeated activity name {activity.name}")
        handle = self._insert(activity)
        self.add_precondition(handle, *pre)
        self._touch()
        return handle

    def add_precondition(self, handle: int, *pre: int) -> None:
        self._check_handle(handle)
        for p in pre:
            self._check_handle(p)
            if handle == self.begin or p == self.end:
                raise GraphStructureError(f"{self.name}: edges cannot enter BEGIN or leave END")
            if p == handle or nx.has_path(self._graph, handle, p):
                raise GraphStructureError(
                    f"{self.name}: cycle from {self.activity(p).name} to {self.activity(handle).name}"
                )
            self._graph.add_edge(p, handle)
        self._touch()

    def remove_precondition(self, handle: int, pre: int) -> None:
        if not self._graph.has_edge(pre, handle):
            raise GraphStructureError(
                f"{self.name}: {self.activity(pre).name} is not a predecessor of {self.activity(handle).name}"
            )
        self._graph.remove_edge(pre, handle)
        self._touch()

    def activity(self, handle: int) -> Activity:
        self._check_handle(handle)
        return self._graph.nodes[handle]["activity"]

    def handle(self, name: str) -> int:
        for h in self._graph:
            if self.activity(h).name == name:
                return h
        raise KeyError(name)

    def handle_of(self, activity: Activity) -> int:
        for h in self._graph:
            if self.activity(h) is activity:
                return h
        raise GraphStructureError(f"{self.name} has no nested activity {activity.name}")

    def pre(self, handle: int) -> list[int]:
        return list(self._graph.predecessors(handle))

    def post(self, handle: int) -> list[int]:
        return list(self._graph.successors(handle))

    def edges(self) -> list[tuple[int, int]]:
        return list(self._graph.edges)

    def inner_handles(self) -> list[int]:
        return [h for h in nx.topological_sort(self._graph) if h not in (self.begin, self.end)]

    def nested(self) -> list[Activity]:
        return [self.activity(h) for h in self.inner_handles()]

    def events(self) -> Iterator[tuple[int, int, str]]:
        return nx.dfs_labeled_edges(self._graph, self.begin)

    def replace(self, handle: int, new: Activity) -> None:
        if handle in (self.begin, self.end):
            raise GraphStructureError(f"{self.name}: BEGIN and END cannot be replaced")
        old = self.activity(handle)
        if any(h != handle and self.activity(h).name == new.name for h in self._graph):
            raise GraphStructureError(f"{self.name}: repeated activity name {new.name}")
        self._adopt(old, new)
        self._graph.nodes[handle]["activity"] = new

    def replace_child(self, old: Activity, new: Activity) -> None:
        self.replace(self.handle_of(old), new)

    def low(self) -> Decimal:
        return self.support_bounds(self.end)[0]

    def upp(self) -> Decimal:
        return self.support_bounds(self.end)[1]

    def support_bounds(self, handle: int) -> tuple[Decimal, Decimal]:
        self._check_handle(handle)
        lower: dict[int, Decimal] = {}
        upper: dict[int, Decimal] = {}
        for h in nx.topological_sort(self._graph):
            activity = self.activity(h)
            preds = self.pre(h)
            lower[h] = activity.eft + max((lower[p] for p in preds), default=Decimal(0))
            upper[h] = activity.lft + max((upper[p] for p in preds), default=Decimal(0))
            if h == handle:
                break
        return lower[handle], upper[handle]

    def activities_between(self, begin: int, end: int) -> set[int]:
        self._check_handle(begin)
        self._check_handle(end)
        after = nx.descendants(self._graph, begin) | {begin}
        before = nx.ancestors(self._graph, end) | {end}
        return after & before

    def copy_recursive(self, suffix: str, begin: int | None = None, end: int | None = None) -> Dag:
        begin = self.begin if begin is None else begin
        end = self.end if end is None else end
        between = self.activities_between(begin, end)
        copy = Dag(self.name + suffix)

        mapping: dict[int, int] = {}
        if begin == self.begin:
            mapping[begin] = copy.begin
        if end == self.end:
            mapping[end] = copy.end
        for h in nx.topological_sort(self._graph.subgraph(between)):
            if h not in mapping:
                mapping[h] = copy._insert(self.activity(h).copy_recursive(suffix))

        for u, v in self._graph.subgraph(between).edges:
            copy._graph.add_edge(mapping[u], mapping[v])
        if begin != self.begin:
            copy._graph.add_edge(copy.begin, mapping[begin])
        if end != self.end:
            copy._graph.add_edge(mapping[end], copy.end)
        if begin == self.begin and end == self.end:
            self._keep_bounds(copy)
        return copy

    def remove_between(self, begin: int, end: int, remove_shared: bool) -> None:
        between = self.activities_between(begin, end)
        if not remove_shared:
            for p in self.post(end):
                self._graph.remove_edge(end, p)
            between -= self.activities_between(self.begin, self.end)
        between -= {self.begin, self.end}
        self._graph.remove_nodes_from(between)
        self._touch()

    def nest(self, handle: int) -> And:
        if handle not in self.pre(self.end):
            raise GraphStructureError(f"{self.name}: only predecessors of END can be nested")
        name = self.activity(handle).name
        prefix = self.copy_recursive(f"_nestingOf_{name}", self.begin, handle)
        rest = self.copy_recursive("_nonNesting")
        rest.remove_between(rest.begin, rest.handle(name + "_nonNesting"), remove_shared=False)
        return And(self.name + "_N", [rest, prefix])

    def _is_empty(self) -> bool:
        return not self.inner_handles() or self.end in self.post(self.begin)

    def flatten(self) -> None:
        # every nested DAG is checked before the first edit
        pending = [a for a in self.nested() if a.kind in DAG_SHAPED]
        while pending:
            activity = pending.pop()
            if isinstance(activity, Dag) and activity._is_empty():
                raise GraphStructureError(f"{activity.name}: Empty DAG")
            pending.extend(a for a in activity.nested() if a.kind in DAG_SHAPED)

        while True:
            nested = [h for h in self.inner_handles() if self.activity(h).kind in DAG_SHAPED]
            if not nested:
                return
            for h in nested:
                self._inline(h)

    def _inline(self, handle: int) -> None:
        activity = self.activity(handle)
        sub = activity if isinstance(activity, Dag) else activity.as_dag()  # type: ignore[attr-defined]
        if sub._is_empty():
            raise GraphStructureError(f"{sub.name}: Empty DAG")
        preds = self.pre(handle)
        succs = self.post(handle)

        mapping = {h: self._insert(sub.activity(h)) for h in sub.inner_handles()}
        for u, v in sub.edges():
            if u == sub.begin:
                for p in preds:
                    self._graph.add_edge(p, mapping[v])
            elif v == sub.end:
                for s in succs:
                    self._graph.add_edge(mapping[u], s)
            else:
                self._graph.add_edge(mapping[u], mapping[v])
        self._graph.remove_node(handle)
        self._touch()

    def problems(self) -> list[str]:
        return problems(self)

    def _local_problems(self) -> list[str]:
        found: list[str] = []
        if not self.inner_handles() or self._graph.has_edge(self.begin, self.end):
            found.append(f"{self.name}: Empty DAG")

        visited: set[int] = set()
        open_nodes: set[int] = set()
        for u, v, edge_kind in self.events():
            if edge_kind == "forward":
                visited.add(v)
                open_nodes.add(v)
            elif edge_kind == "reverse":
                open_nodes.discard(v)
            elif v in open_nodes:
                found.append(f"{self.name}: Cycle from {self.activity(u).name} to {self.activity(v).name}")

        reaching_end = nx.ancestors(self._graph, self.end) | {self.end}
        for h in self._graph:
            if h not in visited:
                found.append(f"{self.name}: {self.activity(h).name} is not reachable from BEGIN")
            elif h not in reaching_end:
                found.append(f"{self.name}: {self.activity(h).name} does not reach END")
        return found

    def validate(self) -> None:
        validate(self)

    def is_well_nested(self) -> bool:
        return False

    def fingerprint(self) -> tuple:
        return super().fingerprint() + (tuple(self._graph.edges),)


def problems(activity: Activity) -> list[str]:
    """Collect structural defects of every DAG in the tree plus name clashes."""
    found: list[str] = []
    for dag in (a for a in activity.walk() if isinstance(a, Dag)):
        found.extend(dag._local_problems())
    names = Counter(a.name for a in activity.walk())
    found.extend(f"Repeated activity name {name}" for name, count in names.items() if count > 1)
    return found


def validate(activity: Activity) -> None:
    found = problems(activity)
    if found:
        raise GraphStructureError("; ".join(found))

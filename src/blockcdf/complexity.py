from __future__ import annotations

from fractions import Fraction
from math import ceil
from typing import Callable, NamedTuple

import networkx as nx

from .graph import Activity, ActivityKind, Dag


class Measures(NamedTuple):
    c: int
    r: int


def expected_iterations(probability: float) -> int:
    return ceil(1 / (1 - Fraction(str(probability))))


def max_weight_antichain(dag: Dag, weights: dict[int, int]) -> int:
    """Largest total weight of pairwise unordered activities, as a minimum flow.

    Every inner node must carry at least its weight from BEGIN to END; by the
    weighted Dilworth theorem the smallest such flow equals the heaviest
    antichain. Lower bounds become node demands, and the flow value is the cost
    of the single unit-cost edge closing the circulation.
    """
    inner = set(dag.inner_handles())
    if not inner:
        return 0
    flow = nx.DiGraph()
    flow.add_edge("t", "s", weight=1)
    for h in inner:
        flow.add_node(("in", h), demand=weights[h])
        flow.add_node(("out", h), demand=-weights[h])
        flow.add_edge(("in", h), ("out", h))
        flow.add_edge("s", ("in", h))
        flow.add_edge(("out", h), "t")
    for u, v in dag.edges():
        if u in inner and v in inner:
            flow.add_edge(("out", u), ("in", v))
    return int(nx.min_cost_flow_cost(flow))


def _cached(activity: Activity, key: str, compute: Callable[[Activity], int]) -> int:
    fingerprint = activity.fingerprint()
    hit = activity._measure_cache.get(key)
    if hit is not None and hit[0] == fingerprint:
        return hit[1]
    value = compute(activity)
    activity._measure_cache[key] = (fingerprint, value)
    return value


def _combine(activity: Activity, child_value: Callable[[Activity], int], key: str) -> int:
    kind = activity.kind
    children = activity.nested()
    if kind == ActivityKind.simple:
        return 1
    if kind == ActivityKind.and_:
        return sum(child_value(c) for c in children)
    if kind == ActivityKind.xor:
        return max(child_value(c) for c in children)
    if kind == ActivityKind.sequence:
        values = [child_value(c) for c in children]
        return sum(values) if key == "r" else max(values)
    if kind == ActivityKind.repeat:
        body = child_value(children[0])
        return body * expected_iterations(activity.probability) if key == "r" else body  # type: ignore[attr-defined]
    if kind == ActivityKind.dag:
        dag: Dag = activity  # type: ignore[assignment]
        return max_weight_antichain(dag, {h: child_value(dag.activity(h)) for h in dag.inner_handles()})
    raise ValueError(f"Unsupported activity kind: {kind}")


def concurrency(activity: Activity) -> int:
    return _cached(activity, "c", lambda a: _combine(a, concurrency, "c"))


def regeneration(activity: Activity) -> int:
    return _cached(activity, "r", lambda a: _combine(a, regeneration, "r"))


def simplified_concurrency(activity: Activity) -> int:
    return _cached(activity, "simplified_c", lambda a: _combine(a, lambda _: 1, "c"))


def simplified_regeneration(activity: Activity) -> int:
    return _cached(activity, "simplified_r", lambda a: _combine(a, lambda _: 1, "r"))


def measures(activity: Activity) -> Measures:
    return Measures(concurrency(activity), regeneration(activity))


def simplified_measures(activity: Activity) -> Measures:
    return Measures(simplified_concurrency(activity), simplified_regeneration(activity))


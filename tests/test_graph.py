from decimal import Decimal
from pathlib import Path

import pytest

from blockcdf.features import INFINITY
from blockcdf.graph import (
    Activity,
    ActivityKind,
    And,
    Dag,
    GraphStructureError,
    Repeat,
    Sequence,
    Simple,
    Xor,
    validate,
)
from blockcdf.io import load_model

REPO_ROOT = Path(__file__).resolve().parents[1]


def _example(name: str) -> Activity:
    return load_model(f"{REPO_ROOT / 'examples' / 'models.py'}:{name}")


def _names(activity: Activity) -> set[str]:
    return {a.name for a in activity.nested()}


def test_empty_blocks_rejected() -> None:
    with pytest.raises(GraphStructureError, match="cannot be empty"):
        Sequence("S", [])
    with pytest.raises(GraphStructureError, match="cannot be empty"):
        And("A", [])


def test_xor_count_mismatch_rejected() -> None:
    with pytest.raises(GraphStructureError, match="one probability"):
        Xor("X", [Simple.uniform("A", 0, 1)], [0.5, 0.5])


def test_simple_weights_are_normalized() -> None:
    s = Simple("S", [Simple.uniform("a", 0, 1).features[0], Simple.deterministic("b", 2).features[0]], [1, 3])
    assert s.weights == pytest.approx([0.25, 0.75])
    assert s.eft == Decimal(0)
    assert s.lft == Decimal(2)


def test_structural_bounds() -> None:
    a = Simple.uniform("A", 1, 2)
    b = Simple.uniform("B", "0.5", 3)
    assert (Dag.sequence("S", a, b).eft, Dag.sequence("S", a, b).lft) == (Decimal("1.5"), Decimal(5))
    assert (Dag.fork_join("F", a, b).eft, Dag.fork_join("F", a, b).lft) == (Decimal(1), Decimal(3))
    assert (Xor("X", [a, b], [0.5, 0.5]).eft, Xor("X", [a, b], [0.5, 0.5]).lft) == (Decimal("0.5"), Decimal(3))
    repeat = Repeat("R", 0.3, a)
    assert repeat.eft == Decimal(1)
    assert repeat.lft == INFINITY


def test_dag_bounds_follow_longest_path() -> None:
    p = _example("simple_dag")
    assert p.eft == Decimal(0)
    assert p.lft == Decimal(2)
    assert p.support_bounds(p.handle("U")) == (Decimal(0), Decimal(2))
    assert p.support_bounds(p.handle("Q")) == (Decimal(0), Decimal(1))


def test_cycles_and_duplicates_rejected() -> None:
    dag = Dag.empty("D")
    a = dag.add(Simple.uniform("A", 0, 1), dag.begin)
    b = dag.add(Simple.uniform("B", 0, 1), a)
    with pytest.raises(GraphStructureError, match="cycle"):
        dag.add_precondition(a, b)
    with pytest.raises(GraphStructureError, match="repeated activity name"):
        dag.add(Simple.uniform("A", 0, 1), dag.begin)
    with pytest.raises(GraphStructureError, match="BEGIN"):
        dag.add_precondition(dag.begin, a)


def test_remove_precondition() -> None:
    dag = Dag.empty("D")
    a = dag.add(Simple.uniform("A", 0, 1), dag.begin)
    b = dag.add(Simple.uniform("B", 0, 1), dag.begin, a)
    dag.remove_precondition(b, a)
    assert dag.pre(b) == [dag.begin]
    with pytest.raises(GraphStructureError, match="not a predecessor"):
        dag.remove_precondition(b, a)


def test_replace_preserves_edges_and_bounds() -> None:
    p = _example("complex_dag")
    tu = p.handle("TU")
    old = p.activity(tu)
    pre, post = p.pre(tu), p.post(tu)

    surrogate = Simple.uniform("TU_N", 0, 1)
    p.replace(tu, surrogate)

    assert p.activity(tu) is surrogate
    assert p.pre(tu) == pre
    assert p.post(tu) == post
    assert (surrogate.eft, surrogate.lft) == (old.eft, old.lft)
    assert "TU" not in _names(p)
    with pytest.raises(GraphStructureError, match="cannot be replaced"):
        p.replace(p.end, Simple.uniform("E", 0, 1))


def test_replace_child_in_composites() -> None:
    a = Simple.uniform("A", 0, 1)
    seq = Dag.sequence("S", a, Simple.uniform("B", 0, 1))
    seq.replace_child(a, Simple.uniform("A_N", 0, 1))
    assert [x.name for x in seq.nested()] == ["A_N", "B"]

    repeat = Repeat("R", 0.5, seq)
    repeat.replace_body(Simple.uniform("S_N", 0, 1))
    assert repeat.body.name == "S_N"
    assert repeat.body.lft == Decimal(2)

    with pytest.raises(GraphStructureError, match="no nested activity"):
        seq.replace_child(Simple.uniform("Z", 0, 1), Simple.uniform("Z_N", 0, 1))


def test_copy_between_handles() -> None:
    p = _example("simple_dag")
    prefix = p.copy_recursive("_before_U", p.begin, p.handle("U"))
    assert _names(prefix) == {"Q_before_U", "R_before_U", "U_before_U"}
    assert prefix.pre(prefix.end) == [prefix.handle("U_before_U")]
    validate(prefix)


def test_nest_builds_independent_branches() -> None:
    p = _example("simple_dag")
    nested = p.nest(p.handle("V"))

    assert nested.kind == ActivityKind.and_
    assert nested.name == "P_N"
    rest, prefix = nested.activities
    assert _names(rest) == {"Q_nonNesting", "R_nonNesting", "U_nonNesting"}
    assert _names(prefix) == {"S_nestingOf_V", "R_nestingOf_V", "V_nestingOf_V"}
    assert _names(p) == {"Q", "R", "S", "U", "V"}
    validate(nested)


def test_nest_requires_end_predecessor() -> None:
    p = _example("simple_dag")
    with pytest.raises(GraphStructureError, match="predecessors of END"):
        p.nest(p.handle("Q"))


def test_remove_between_keeps_shared_activities() -> None:
    p = _example("simple_dag")
    p.remove_between(p.begin, p.handle("U"), remove_shared=False)
    assert _names(p) == {"R", "S", "V"}
    validate(p)

    q = _example("simple_dag")
    q.remove_between(q.begin, q.handle("U"), remove_shared=True)
    assert _names(q) == {"S", "V"}


def test_flatten_inlines_nested_dag_shapes() -> None:
    dag = Dag.empty("D")
    seq = dag.add(Dag.sequence("S", Simple.uniform("A", 0, 1), Simple.uniform("B", 0, 1)), dag.begin)
    c = dag.add(Simple.uniform("C", 0, 1), seq)
    dag.add_precondition(dag.end, c)

    dag.flatten()
    assert [a.name for a in dag.nested()] == ["A", "B", "C"]
    assert dag.pre(dag.handle("C")) == [dag.handle("B")]
    validate(dag)


def test_as_dag_matches_block() -> None:
    fork = Dag.fork_join("F", Simple.uniform("A", 0, 1), Simple.uniform("B", 0, 2)).as_dag()
    assert fork.pre(fork.end) == [fork.handle("A"), fork.handle("B")]
    assert fork.lft == Decimal(2)
    chain = Dag.sequence("S", Simple.uniform("A", 0, 1), Simple.uniform("B", 0, 2)).as_dag()
    assert chain.lft == Decimal(3)


def test_problems_reports_structure() -> None:
    empty = Dag.empty("E")
    assert "E: Empty DAG" in empty.problems()
    with pytest.raises(GraphStructureError, match="Empty DAG"):
        empty.validate()

    dangling = Dag.empty("D")
    a = dangling.add(Simple.uniform("A", 0, 1), dangling.begin)
    dangling.add_precondition(dangling.end, a)
    dangling.add(Simple.uniform("LOST", 0, 1))
    dangling.add(Simple.uniform("STUCK", 0, 1), a)
    problems = dangling.problems()
    assert "D: LOST is not reachable from BEGIN" in problems
    assert "D: STUCK does not reach END" in problems


def test_problems_reports_repeated_names_across_tree() -> None:
    dag = Dag.empty("D")
    inner = dag.add(Dag.fork_join("F", Simple.uniform("A", 0, 1), Simple.uniform("B", 0, 1)), dag.begin)
    a = dag.add(Simple.uniform("A", 0, 1), inner)
    dag.add_precondition(dag.end, a)
    assert dag.problems() == ["Repeated activity name A"]


def test_events_stream_from_begin() -> None:
    p = _example("simple_dag")
    events = list(p.events())
    assert events[0] == (p.begin, p.begin, "forward")
    forward = [(u, v) for u, v, kind in events if kind == "forward" and u != v]
    assert len(forward) == len(p.inner_handles()) + 1


def test_well_nested() -> None:
    assert Dag.sequence("S", Simple.uniform("A", 0, 1), Simple.uniform("B", 0, 1)).is_well_nested()
    assert not Repeat("R", 0.5, Simple.uniform("A", 0, 1)).is_well_nested()
    assert not _example("simple_dag").is_well_nested()


def test_flatten_rejects_empty_nested_dag() -> None:
    dag = Dag.empty("D")
    a = dag.add(Simple.uniform("A", 0, 1), dag.begin)
    i = dag.add(Dag.empty("I"), a)
    dag.add_precondition(dag.end, i)
    edges = dag.edges()

    with pytest.raises(GraphStructureError, match="I: Empty DAG"):
        dag.flatten()
    assert dag.edges() == edges
    assert _names(dag) == {"A", "I"}


def test_flatten_rejects_deeply_nested_empty_dag_before_editing() -> None:
    dag = Dag.empty("D")
    seq = dag.add(Dag.sequence("S", Simple.uniform("A", 0, 1), Dag.empty("I")), dag.begin)
    dag.add_precondition(dag.end, seq)
    edges = dag.edges()

    with pytest.raises(GraphStructureError, match="I: Empty DAG"):
        dag.flatten()
    assert dag.edges() == edges
    assert _names(dag) == {"S"}


def test_xor_rejects_negative_probabilities() -> None:
    with pytest.raises(GraphStructureError, match="non-negative"):
        Xor("X", [Simple.uniform("A", 0, 1), Simple.uniform("B", 0, 1)], [1.5, -0.5])


def test_copies_keep_declared_bounds() -> None:
    surrogate = Simple.uniform("S_N", 0, 1)
    surrogate.set_bounds(Decimal(0), INFINITY)
    assert surrogate.copy_recursive("_c").lft == INFINITY

    dag = Dag.empty("D")
    s = dag.add(surrogate, dag.begin)
    b = dag.add(Simple.uniform("B", 0, 1), s)
    dag.add_precondition(dag.end, b)
    prefix = dag.copy_recursive("_before_B", dag.begin, b)
    assert prefix.activity(prefix.handle("S_N_before_B")).lft == INFINITY
    nested = dag.nest(b)
    assert nested.activities[1].activity(nested.activities[1].handle("S_N_nestingOf_B")).lft == INFINITY

    seq = Dag.sequence("SEQ", Simple.uniform("A", 0, 1), Simple.uniform("C", 0, 1))
    seq.set_bounds(Decimal(0), Decimal(5))
    assert seq.copy_recursive("_c").lft == Decimal(5)

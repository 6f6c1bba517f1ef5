from __future__ import annotations

from blockcdf.graph import And, Dag, Repeat, Sequence, Simple, Xor


def uniform_and() -> And:
    return Dag.fork_join("AND", Simple.uniform("A", 0, 2), Simple.uniform("B", 0, 2))


def uniform_sequence() -> Sequence:
    return Dag.sequence("SEQ", Simple.uniform("A", 0, 1), Simple.uniform("B", 0, 1))


def deterministic_xor() -> Xor:
    return Xor("XOR", [Simple.deterministic("D1", 1), Simple.deterministic("D2", 2)], [0.3, 0.7])


def simple_dag() -> Dag:
    p = Dag.empty("P")
    q = p.add(Simple.uniform("Q", 0, 1), p.begin)
    r = p.add(Simple.uniform("R", 0, 1), p.begin)
    s = p.add(Simple.uniform("S", 0, 1), p.begin)
    u = p.add(Simple.uniform("U", 0, 1), q, r)
    v = p.add(Simple.uniform("V", 0, 1), s, r)
    p.add_precondition(p.end, u, v)
    return p


def complex_dag() -> Dag:
    tu = Dag.fork_join(
        "TU",
        Dag.sequence("T", Simple.uniform("T1", 0, 1), Simple.uniform("T2", 0, 1)),
        Simple.uniform("U", 0, 1),
    )
    wx = Dag.fork_join(
        "WX",
        Dag.sequence("X", Simple.uniform("X1", 0, 1), Simple.uniform("X2", 0, 1)),
        Simple.uniform("W", 0, 1),
    )

    p = Dag.empty("P")
    q = p.add(Simple.uniform("Q", 0, 1), p.begin)
    r = p.add(Simple.uniform("R", 0, 1), p.begin)
    s = p.add(Simple.uniform("S", 0, 1), p.begin)
    tu_h = p.add(tu, q, r)
    v = p.add(Simple.uniform("V", 0, 1), r)
    wx_h = p.add(wx, s, r)
    p.add_precondition(p.end, tu_h, v, wx_h)
    return p


def retry_dag() -> Dag:
    body = Xor(
        "ATTEMPT",
        [
            Simple.uniform("A6", 0, "0.8"),
            Dag.sequence(
                "SEQ",
                Dag.fork_join("AND_inner", Simple.uniform("A3", 0, "0.8"), Simple.uniform("A4", 0, "0.8")),
                Simple.uniform("A5", 0, "0.8"),
            ),
        ],
        [0.3, 0.7],
    )

    p = Dag.empty("RETRY")
    prepare = p.add(Simple.uniform("PREPARE", 0, 1), p.begin)
    audit = p.add(Simple.uniform("AUDIT", 0, 1), p.begin)
    retry = p.add(Repeat("RETRY_LOOP", 0.2, body), prepare)
    p.add_precondition(p.end, retry, audit)
    return p

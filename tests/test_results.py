# tests/test_results.py
"""
Tests for sink detection, findings and witness reconstruction.
"""

import logging
from unittest.mock import patch

import pytest

from taintflow.config import SolverConfig
from taintflow.domain import Entry, Local
from taintflow.problem import TaintProblem
from taintflow.results import ResultExtractor
from taintflow.solver import SolverResult, TabulationSolver
from taintflow.supergraph import Supergraph


@pytest.fixture
def put_get(builder):
    main = builder.procedure("main")
    main.call("source", result="pw")     # 1
    main.store("se", "secret", "pw")      # 2
    main.load("out", "se", "secret")      # 3
    main.call("sink", ("out",))           # 4
    builder.entrypoint("main")
    return builder.build()


@pytest.fixture
def through_wrapper(builder):
    main = builder.procedure("main")
    main.call("source", result="pw")     # 1
    main.call("wrap", ("pw",), result="y")  # 2
    main.call("sink", ("y",))             # 3
    wrap = builder.procedure("wrap", ("x",), file="Wrap.java")
    wrap.ret("x")
    builder.entrypoint("main")
    return builder.build()


class TestFindings:

    def test_seed_and_reach(self, analyze, put_get):
        report = analyze(put_get)
        assert len(report) == 1
        finding = report.findings[0]
        assert finding.sink.id == 4
        assert finding.facts == (Local("out"),)
        assert finding.source.id == 1
        assert report.sinks() == frozenset({4})
        assert report.sources() == frozenset({1})
        assert report.endpoints() == frozenset({(1, 4)})
        assert report.has_findings
        assert not report.incomplete

    def test_witness_runs_from_source_to_sink(self, analyze, put_get):
        finding = analyze(put_get).findings[0]
        assert [n.index for n in finding.witness] == [1, 2, 3, 4]
        assert finding.has_witness
        assert finding.format_path() == (
            "Java2Js.java:1 -> Java2Js.java:2 -> Java2Js.java:3 -> Java2Js.java:4")

    def test_format_message(self, analyze, put_get):
        msg = analyze(put_get).findings[0].format_message()
        assert msg.startswith("Java2Js.java:4: tainted Local(out) reaches sink 'sink'")
        assert "from Java2Js.java:1" in msg

    def test_sink_positions(self, analyze, put_get):
        assert analyze(put_get).sink_positions() == ["Java2Js.java:4"]

    def test_strong_update_suppresses(self, analyze, builder):
        main = builder.procedure("main")
        main.call("source", result="pw")
        main.const("pw")
        main.call("sink", ("pw",))
        builder.entrypoint("main")
        assert len(analyze(builder.build())) == 0

    def test_zero_only_sink_not_reported(self, analyze, builder, sources, sinks):
        main = builder.procedure("main")
        main.const("c")
        main.call("sink", ("c",))
        builder.entrypoint("main")
        program = builder.build()
        report = analyze(program)
        assert not report.has_findings
        sg = Supergraph(program)
        result = TabulationSolver(TaintProblem(sg, sources, sinks)).solve()
        assert result.sink_nodes == {2}

    def test_untainted_actual_not_reported(self, analyze, builder):
        main = builder.procedure("main")
        main.call("source", result="pw")
        main.call("sink", ("other",))
        builder.entrypoint("main")
        assert len(analyze(builder.build())) == 0

    def test_tainted_receiver_is_reported(self, analyze, builder):
        main = builder.procedure("main")
        main.call("source", result="pw")
        main.store("se", "secret", "pw")
        main.call("sink", receiver="se")
        builder.entrypoint("main")
        report = analyze(builder.build())
        assert report.findings[0].facts == (Entry("se", "secret"),)

    def test_one_finding_per_sink(self, analyze, builder):
        main = builder.procedure("main")
        main.call("source", result="a")
        main.call("source", result="b")
        main.call("sink", ("a", "b"))
        builder.entrypoint("main")
        report = analyze(builder.build())
        assert len(report) == 1
        assert set(report.findings[0].facts) == {Local("a"), Local("b")}

    def test_finding_is_idempotent(self, analyze, put_get):
        first, second = analyze(put_get), analyze(put_get)
        assert first.endpoints() == second.endpoints()
        assert [f.facts for f in first] == [f.facts for f in second]


class TestWitness:

    def test_witness_enters_and_leaves_callee(self, analyze, through_wrapper):
        finding = analyze(through_wrapper).findings[0]
        names = [n.procedure_name for n in finding.witness]
        assert names[0] == "main"
        assert names[-1] == "main"
        assert "wrap" in names
        assert finding.witness[0].index == 1
        assert finding.witness[-1].index == 3
        assert any(str(p).startswith("Wrap.java") for p in finding.positions if p)

    def test_witness_of_unbalanced_flow(self, analyze, builder):
        main = builder.procedure("main")
        main.call("helper", result="v")
        main.call("sink", ("v",))
        helper = builder.procedure("helper")
        helper.call("source", result="s")
        helper.ret("s")
        builder.entrypoint("helper")
        finding = analyze(builder.build()).findings[0]
        assert finding.source.procedure_name == "helper"
        assert finding.witness[-1].procedure_name == "main"

    def test_no_witness_without_tracking(self, analyze, put_get):
        report = analyze(put_get, config=SolverConfig(track_witnesses=False))
        assert len(report) == 1
        assert report.findings[0].witness == ()
        assert report.findings[0].source is None
        assert report.sources() == frozenset()
        assert report.endpoints() == frozenset({(None, 4)})

    def test_broken_chain_keeps_finding(self, analyze, put_get, caplog):
        caplog.set_level(logging.WARNING, logger="taintflow")
        with patch.object(SolverResult, "justification", return_value=(None, None)):
            report = analyze(put_get)
        assert len(report) == 1
        assert not report.findings[0].has_witness
        assert any("witness" in r.getMessage() for r in caplog.records)

    def test_extractor_direct(self, problem_for, put_get):
        sg, problem = problem_for(put_get)
        result = TabulationSolver(problem).solve()
        extractor = ResultExtractor(result, problem)
        out = result.domain.id_of(Local("out"))
        assert [n.id for n in extractor.witness(4, out)] == [1, 2, 3, 4]
        assert extractor.witness(4, 999) == ()

    def test_incomplete_solve_reported(self, analyze, put_get, caplog):
        caplog.set_level(logging.WARNING, logger="taintflow")
        report = analyze(put_get, config=SolverConfig(max_path_edges=1))
        assert report.incomplete
        assert not report.has_findings
        assert any("incomplete" in r.getMessage() for r in caplog.records)

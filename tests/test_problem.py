# tests/test_problem.py
"""
Unit tests for the taint flow functions and the Source/Sink policy.

Each test builds a tiny program, picks the instruction under test out of
the supergraph and applies one flow function to one fact.
"""

from unittest.mock import MagicMock

import pytest

from taintflow.domain import ANY_KEY, ZERO, Entry, Field, Global, Local
from taintflow.problem import TaintProblem
from taintflow.supergraph import Supergraph


def _normal(problem_for, builder, emit):
    """Return ``flow(fact)`` applying normal flow across the emitted instruction."""
    main = builder.procedure("main")
    index = emit(main)
    sg, problem = problem_for(builder.build())
    src = sg.node(sg.node_at(0, index))
    dst = sg.node(sg.node_at(0, index + 1))
    return lambda fact: problem.normal_flow(src, dst, fact)


class TestAssignFlow:

    @pytest.fixture
    def copy(self, problem_for, builder):
        return _normal(problem_for, builder, lambda p: p.assign("x", "y"))

    def test_zero_passes(self, copy):
        assert copy(ZERO) == {ZERO}

    def test_tainted_source_taints_target(self, copy):
        assert copy(Local("y")) == {Local("y"), Local("x")}

    def test_target_is_strongly_updated(self, copy):
        assert copy(Local("x")) == set()
        assert copy(Field("x", "f")) == set()
        assert copy(Entry("x", "k")) == set()

    def test_reference_copy_moves_fields_and_entries(self, copy):
        assert copy(Field("y", "f")) == {Field("y", "f"), Field("x", "f")}
        assert copy(Entry("y", ANY_KEY)) == {Entry("y", ANY_KEY), Entry("x", ANY_KEY)}

    def test_unrelated_fact_untouched(self, copy):
        assert copy(Local("z")) == {Local("z")}
        assert copy(Global("g")) == {Global("g")}

    def test_constant_kills(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.const("pw"))
        assert flow(Local("pw")) == set()
        assert flow(Local("other")) == {Local("other")}

    def test_field_target(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.assign("a.f", "pw"))
        assert flow(Local("pw")) == {Local("pw"), Field("a", "f")}
        assert flow(Field("a", "f")) == set()
        assert flow(Field("a", "g")) == {Field("a", "g")}
        assert flow(Local("a")) == {Local("a")}

    def test_field_source(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.assign("x", "a.f"))
        assert flow(Field("a", "f")) == {Field("a", "f"), Local("x")}

    def test_global_target(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.assign("::g", "pw"))
        assert flow(Local("pw")) == {Local("pw"), Global("g")}
        assert flow(Global("g")) == set()

    def test_operator_with_several_operands(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.assign("s", "a", "b"))
        assert flow(Local("b")) == {Local("b"), Local("s")}
        # no reference copy through a computed value
        assert flow(Field("a", "f")) == {Field("a", "f")}


class TestStructureFlow:

    def test_literal_store_generates_entry(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.store("se", "secret", "pw"))
        assert flow(Local("pw")) == {Local("pw"), Entry("se", "secret")}

    def test_literal_store_is_strong(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.store("se", "secret"))
        assert flow(Entry("se", "secret")) == set()
        assert flow(Entry("se", "other")) == {Entry("se", "other")}

    def test_any_key_entry_survives_every_write(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.store("se", "secret"))
        assert flow(Entry("se", ANY_KEY)) == {Entry("se", ANY_KEY)}

    def test_non_literal_store_is_weak(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.store("se", None, "pw"))
        assert flow(Local("pw")) == {Local("pw"), Entry("se", ANY_KEY)}
        assert flow(Entry("se", "secret")) == {Entry("se", "secret")}

    def test_remove_kills_entry(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.remove("b", "secret"))
        assert flow(Entry("b", "secret")) == set()
        assert flow(Local("pw")) == {Local("pw")}

    def test_load_matching_key(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.load("out", "se", "secret"))
        assert flow(Entry("se", "secret")) == {Entry("se", "secret"), Local("out")}
        assert flow(Entry("se", "other")) == {Entry("se", "other")}
        assert flow(Entry("se", ANY_KEY)) == {Entry("se", ANY_KEY), Local("out")}
        assert flow(Entry("b", "secret")) == {Entry("b", "secret")}

    def test_load_kills_target(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.load("out", "se", "secret"))
        assert flow(Local("out")) == set()
        assert flow(Field("out", "f")) == set()

    def test_non_literal_load_reads_every_entry(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.load("out", "se", None))
        assert flow(Entry("se", "other")) == {Entry("se", "other"), Local("out")}

    def test_merge_copies_entries(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.merge("newb", "b"))
        assert flow(Entry("b", "secret")) == {Entry("b", "secret"), Entry("newb", "secret")}
        assert flow(Entry("newb", "k")) == {Entry("newb", "k")}
        assert flow(Local("b")) == {Local("b")}

    def test_nop_is_identity(self, problem_for, builder):
        flow = _normal(problem_for, builder, lambda p: p.nop("eval"))
        assert flow(Entry("se", "secret")) == {Entry("se", "secret")}


@pytest.fixture
def call_site(problem_for, builder):
    """main: 1 pw = source(); 2 r = helper(pw, se); 3 nop  /  helper(x, s): $ret = x"""
    main = builder.procedure("main")
    main.call("source", result="pw")
    main.call("helper", ("pw", "se"), result="r")
    main.nop()
    helper = builder.procedure("helper", ("x", "s"))
    helper.ret("x")
    builder.entrypoint("main")
    sg, problem = problem_for(builder.build())
    call = sg.node(sg.node_at(0, 2))
    return sg, problem, call


class TestCallFlow:

    def test_actuals_map_to_formals(self, call_site):
        sg, problem, call = call_site
        callee = sg.procedure(1)
        assert problem.call_flow(call, callee, Local("pw")) == {Local("x")}
        assert problem.call_flow(call, callee, Entry("se", "secret")) == {Entry("s", "secret")}
        assert problem.call_flow(call, callee, Field("se", "f")) == {Field("s", "f")}

    def test_non_actuals_dropped(self, call_site):
        sg, problem, call = call_site
        assert problem.call_flow(call, sg.procedure(1), Local("other")) == set()
        assert problem.call_flow(call, sg.procedure(1), Local("r")) == set()

    def test_zero_and_globals_pass(self, call_site):
        sg, problem, call = call_site
        assert problem.call_flow(call, sg.procedure(1), ZERO) == {ZERO}
        assert problem.call_flow(call, sg.procedure(1), Global("g")) == {Global("g")}

    def test_receiver_binds_first_formal(self, problem_for, builder):
        main = builder.procedure("main")
        main.call("check", ("pw",), receiver="obj")
        builder.procedure("check", ("this", "str"))
        sg, problem = problem_for(builder.build())
        call = sg.node(sg.node_at(0, 1))
        assert problem.call_flow(call, sg.procedure(1), Field("obj", "f")) == {Field("this", "f")}
        assert problem.call_flow(call, sg.procedure(1), Local("pw")) == {Local("str")}


class TestReturnFlow:

    def _flow(self, call_site, fact):
        sg, problem, call = call_site
        exit_node = sg.node(sg.exit_of(1))
        rs = sg.node(sg.return_sites(call.id)[0])
        return problem.return_flow(exit_node, rs, call, fact)

    def test_return_value_reaches_result(self, call_site):
        assert self._flow(call_site, Local("$ret")) == {Local("r")}

    def test_object_contents_return_to_actual(self, call_site):
        assert self._flow(call_site, Entry("s", "secret")) == {Entry("se", "secret")}
        assert self._flow(call_site, Field("x", "f")) == {Field("pw", "f")}

    def test_callee_locals_do_not_escape(self, call_site):
        assert self._flow(call_site, Local("x")) == set()
        assert self._flow(call_site, Local("tmp")) == set()

    def test_zero_and_globals_pass(self, call_site):
        assert self._flow(call_site, ZERO) == {ZERO}
        assert self._flow(call_site, Global("g")) == {Global("g")}

    def test_no_result_drops_return_value(self, problem_for, builder):
        builder.procedure("main").call("helper")
        builder.procedure("helper").ret("v")
        sg, problem = problem_for(builder.build())
        call = sg.node(1)
        out = problem.return_flow(sg.node(sg.exit_of(1)), sg.node(2), call, Local("$ret"))
        assert out == set()


class TestCallToReturnFlow:

    def _flow(self, call_site, fact):
        sg, problem, call = call_site
        rs = sg.node(sg.return_sites(call.id)[0])
        return problem.call_to_return_flow(call, rs, fact)

    def test_plain_actual_bypasses_callee(self, call_site):
        assert self._flow(call_site, Local("pw")) == {Local("pw")}

    def test_shared_contents_go_through_callee(self, call_site):
        assert self._flow(call_site, Entry("se", "secret")) == set()
        assert self._flow(call_site, Field("pw", "f")) == set()

    def test_result_is_killed(self, call_site):
        assert self._flow(call_site, Local("r")) == set()
        assert self._flow(call_site, Field("r", "f")) == set()

    def test_globals_go_through_callee(self, call_site):
        assert self._flow(call_site, Global("g")) == set()

    def test_unrelated_fact_bypasses(self, call_site):
        assert self._flow(call_site, Entry("b", "k")) == {Entry("b", "k")}

    def test_zero_at_non_source(self, call_site):
        assert self._flow(call_site, ZERO) == {ZERO}

    def test_source_generates_result(self, call_site):
        sg, problem, _ = call_site
        source = sg.node(1)
        assert problem.call_to_return_flow(source, sg.node(2), ZERO) == {ZERO, Local("pw")}

    def test_source_without_result(self, problem_for, builder):
        builder.procedure("main").call("source")
        sg, problem = problem_for(builder.build())
        assert problem.call_to_return_flow(sg.node(1), sg.node(2), ZERO) == {ZERO}

    def test_unresolved_call_is_identity(self, problem_for, builder):
        builder.procedure("main").call("library", ("se",), result="r")
        sg, problem = problem_for(builder.build())
        call, rs = sg.node(1), sg.node(2)
        for fact in (Entry("se", "k"), Global("g"), Local("r"), Local("se")):
            assert problem.call_to_return_flow(call, rs, fact) == {fact}

    def test_actual_not_bound_in_every_target_bypasses(self, problem_for, builder):
        builder.procedure("main").call("run", ("a", "b"), targets=["one", "two"])
        builder.procedure("one", ("x",))
        builder.procedure("two", ("x", "y"))
        sg, problem = problem_for(builder.build())
        call, rs = sg.node(1), sg.node(2)
        assert problem.call_to_return_flow(call, rs, Entry("a", "k")) == set()
        assert problem.call_to_return_flow(call, rs, Entry("b", "k")) == {Entry("b", "k")}

    def test_rebound_formal_keeps_contents_on_actual(self, problem_for, builder):
        builder.procedure("main").call("reset", ("se", "bs", "m"))
        reset = builder.procedure("reset", ("s", "b", "o"))
        reset.const("s")
        reset.load("b", "other", "k")
        reset.store("o", "k")
        sg, problem = problem_for(builder.build())
        call, rs = sg.node(1), sg.node(2)
        assert problem.call_to_return_flow(call, rs, Entry("se", "k")) == {Entry("se", "k")}
        assert problem.call_to_return_flow(call, rs, Field("bs", "f")) == {Field("bs", "f")}
        assert problem.call_to_return_flow(call, rs, Entry("m", "k")) == set()


class TestPolicy:

    def test_predicates_are_memoized(self, builder):
        builder.procedure("main").call("source", result="pw")
        sg = Supergraph(builder.build())
        pred = MagicMock(return_value=True)
        problem = TaintProblem(sg, sources=pred)
        node = sg.node(1)
        assert problem.is_source(node)
        assert problem.is_source(node)
        assert pred.call_count == 1
        pred.assert_called_once_with(node, ())

    def test_non_call_nodes_never_match(self, builder):
        builder.procedure("main").assign("x", "y")
        sg = Supergraph(builder.build())
        pred = MagicMock(return_value=True)
        problem = TaintProblem(sg, sources=pred, sinks=pred)
        assert not problem.is_source(sg.node(1))
        assert not problem.is_sink(sg.node(1))
        pred.assert_not_called()

    def test_predicates_see_targets(self, builder):
        builder.procedure("main").call("helper")
        builder.procedure("helper")
        sg = Supergraph(builder.build())
        pred = MagicMock(return_value=False)
        problem = TaintProblem(sg, sinks=pred)
        assert not problem.is_sink(sg.node(1))
        _, targets = pred.call_args[0]
        assert [t.name for t in targets] == ["helper"]

    def test_taints_actual(self, builder):
        builder.procedure("main").call("put", ("k", "v"), receiver="se")
        sg = Supergraph(builder.build())
        problem = TaintProblem(sg)
        call = sg.node(1)
        assert problem.taints_actual(call, Local("v"))
        assert problem.taints_actual(call, Entry("se", "secret"))
        assert not problem.taints_actual(call, Local("other"))
        assert not problem.taints_actual(call, Global("g"))
        assert not problem.taints_actual(sg.node(0), Local("v"))

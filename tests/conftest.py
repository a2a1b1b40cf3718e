# tests/conftest.py
"""
Shared fixtures for the taintflow test-suite.

Programs are assembled with :class:`taintflow.ProgramBuilder`.  Every
builder starts at index 0 with a synthetic entry instruction, so in a
single-procedure program the node id of an instruction equals its index.
"""

import pytest

from taintflow import ProgramBuilder, Supergraph, TaintProblem, analyze_taint, calls_to


@pytest.fixture
def builder():
    return ProgramBuilder(file="Java2Js.java")


@pytest.fixture
def sources():
    return calls_to("source")


@pytest.fixture
def sinks():
    return calls_to("sink")


@pytest.fixture
def analyze(sources, sinks):
    """``analyze(program, **kw)`` with the default source/sink policy."""

    def _run(program, **kwargs):
        return analyze_taint(program, sources, sinks, **kwargs)

    return _run


@pytest.fixture
def problem_for(sources, sinks):
    """``problem_for(program)`` → ``(supergraph, TaintProblem)``."""

    def _make(program):
        sg = Supergraph(program)
        return sg, TaintProblem(sg, sources, sinks)

    return _make


@pytest.fixture
def new_engine():
    """Emit ``sem = new ScriptEngineManager(); se = sem.getEngineByName(..)``.

    Both calls are unresolved, as library code outside the analysed program
    would be.
    """

    def _emit(proc, engine="se"):
        proc.call("ScriptEngineManager", result="sem")
        proc.call("getEngineByName", ("lang",), receiver="sem", result=engine,
                  constants=("JavaScript",))

    return _emit

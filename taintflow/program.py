"""
taintflow/program.py
====================

Program model consumed by the engine.

The engine does not build call graphs or control-flow graphs itself; an
external frontend hands it a set of :class:`Procedure` objects (one local
CFG each, over dense instruction indices) and a may-call-target relation.
This module fixes the shape of that hand-off:

    Procedure             one host or script procedure (arena slot)
    Instruction kinds     closed tagged variant: Assign / Call /
                          StructureStore / StructureLoad / StructureMerge / Nop
    Program               arena of procedures + call-target table
    CallGraphProvider     structural protocol any frontend can satisfy
    ProgramBuilder        convenience assembler used by tests and frontends

Procedures and call targets are referred to by integer ids throughout, so
cyclic call graphs (recursion, mutual recursion) need no object cycles.

Typical usage
-------------
    pb = ProgramBuilder()
    main = pb.procedure("main")
    main.call("source", result="pw")
    main.store("se", "secret", "pw")
    main.load("out", "se", "secret")
    main.call("sink", args=("out",))
    pb.entrypoint("main")
    program = pb.build()
"""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    ClassVar,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

__all__ = [
    "RETURN_LOCAL",
    "Runtime",
    "SourcePosition",
    "InstructionKind",
    "LocalRef",
    "FieldRef",
    "GlobalRef",
    "Ref",
    "Assign",
    "Call",
    "StructureStore",
    "StructureLoad",
    "StructureMerge",
    "Nop",
    "Instruction",
    "Procedure",
    "CallGraphProvider",
    "Program",
    "ProcedureBuilder",
    "ProgramBuilder",
]

logger = logging.getLogger(__name__)

#: Reserved local holding a procedure's return value at its exit node.
RETURN_LOCAL = "$ret"


# ═══════════════════════════════════════════════════════════════════════════
# §1  POSITIONS AND RUNTIMES
# ═══════════════════════════════════════════════════════════════════════════

class Runtime(enum.Enum):
    """Which side of the host/script boundary a procedure lives on."""

    HOST = "host"
    SCRIPT = "script"


@dataclass(frozen=True)
class SourcePosition:
    """A source-code location reported in witnesses."""

    file: str
    line: int
    column: int = 0
    text: str = ""

    def __str__(self) -> str:
        loc = f"{self.file}:{self.line}"
        if self.column:
            loc += f":{self.column}"
        return loc


# ═══════════════════════════════════════════════════════════════════════════
# §2  INSTRUCTIONS (closed tagged variant)
# ═══════════════════════════════════════════════════════════════════════════

class InstructionKind(enum.Enum):
    """The fixed set of instruction categories the flow functions dispatch on."""

    ASSIGN = "assign"
    CALL = "call"
    STORE = "structure-store"
    LOAD = "structure-load"
    MERGE = "structure-merge"
    OTHER = "other"


@dataclass(frozen=True)
class LocalRef:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class FieldRef:
    base: str
    field: str

    def __str__(self) -> str:
        return f"{self.base}.{self.field}"


@dataclass(frozen=True)
class GlobalRef:
    name: str

    def __str__(self) -> str:
        return f"::{self.name}"


Ref = Union[LocalRef, FieldRef, GlobalRef]


def _as_ref(value: Union[str, Ref]) -> Ref:
    """Coerce ``"x"`` → LocalRef, ``"x.f"`` → FieldRef, ``"::g"`` → GlobalRef."""
    if not isinstance(value, str):
        return value
    if value.startswith("::"):
        return GlobalRef(value[2:])
    if "." in value:
        base, _, name = value.partition(".")
        return FieldRef(base, name)
    return LocalRef(value)


@dataclass(frozen=True)
class Assign:
    """``target = op(sources...)``; no sources means a constant right-hand side."""

    target: Ref
    sources: Tuple[Ref, ...] = ()

    kind: ClassVar[InstructionKind] = InstructionKind.ASSIGN

    @property
    def is_constant(self) -> bool:
        return not self.sources

    def __str__(self) -> str:
        rhs = ", ".join(str(s) for s in self.sources) or "<const>"
        return f"{self.target} = {rhs}"


@dataclass(frozen=True)
class Call:
    """A call site.

    ``receiver`` (when present) is passed as the first actual, ahead of
    ``args``.  ``constants[i]`` is the literal value of ``args[i]`` when the
    frontend knows it statically, ``None`` otherwise.
    """

    callee: str
    args: Tuple[str, ...] = ()
    result: Optional[str] = None
    receiver: Optional[str] = None
    constants: Tuple[Optional[str], ...] = ()

    kind: ClassVar[InstructionKind] = InstructionKind.CALL

    @property
    def actuals(self) -> Tuple[str, ...]:
        if self.receiver is not None:
            return (self.receiver,) + self.args
        return self.args

    def constant(self, i: int) -> Optional[str]:
        """Literal value of argument *i*, or ``None`` when not static."""
        if 0 <= i < len(self.constants):
            return self.constants[i]
        return None

    def __str__(self) -> str:
        recv = f"{self.receiver}." if self.receiver else ""
        res = f"{self.result} = " if self.result else ""
        return f"{res}{recv}{self.callee}({', '.join(self.args)})"


@dataclass(frozen=True)
class StructureStore:
    """``structure[key] = value``.

    ``key`` is ``None`` when the key is not a compile-time constant.
    ``value`` is ``None`` for a constant value or, with ``remove=True``,
    for removal of the key.
    """

    structure: str
    key: Optional[str]
    value: Optional[str] = None
    remove: bool = False

    kind: ClassVar[InstructionKind] = InstructionKind.STORE

    @property
    def key_is_literal(self) -> bool:
        return self.key is not None

    def __str__(self) -> str:
        key = repr(self.key) if self.key is not None else "?"
        if self.remove:
            return f"{self.structure}.remove({key})"
        return f"{self.structure}[{key}] = {self.value or '<const>'}"


@dataclass(frozen=True)
class StructureLoad:
    """``target = structure[key]``."""

    target: str
    structure: str
    key: Optional[str]

    kind: ClassVar[InstructionKind] = InstructionKind.LOAD

    @property
    def key_is_literal(self) -> bool:
        return self.key is not None

    def __str__(self) -> str:
        key = repr(self.key) if self.key is not None else "?"
        return f"{self.target} = {self.structure}[{key}]"


@dataclass(frozen=True)
class StructureMerge:
    """``target.putAll(source)``."""

    target: str
    source: str

    kind: ClassVar[InstructionKind] = InstructionKind.MERGE

    def __str__(self) -> str:
        return f"{self.target}.putAll({self.source})"


@dataclass(frozen=True)
class Nop:
    label: str = ""

    kind: ClassVar[InstructionKind] = InstructionKind.OTHER

    def __str__(self) -> str:
        return self.label or "nop"


Instruction = Union[Assign, Call, StructureStore, StructureLoad, StructureMerge, Nop]


# ═══════════════════════════════════════════════════════════════════════════
# §3  PROCEDURES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Procedure:
    """One procedure's local control-flow graph.

    Attributes
    ----------
    pid : int
        Arena index of this procedure in its :class:`Program`.
    name : str
        Human-readable (possibly qualified) name.
    instructions : tuple[Instruction, ...]
        Instruction at each local index.
    edges : tuple[(int, int), ...]
        Local control-flow edges over instruction indices.
    params : tuple[str, ...]
        Formal parameters; the receiver, if any, comes first.
    entry, exit : int
        Indices of the unique entry and exit instructions.
    runtime : Runtime
        Host program or embedded script.
    positions : tuple[SourcePosition | None, ...]
        Optional per-instruction source positions.
    """

    pid: int
    name: str
    instructions: Tuple[Instruction, ...]
    edges: Tuple[Tuple[int, int], ...]
    params: Tuple[str, ...] = ()
    entry: int = 0
    exit: int = -1
    runtime: Runtime = Runtime.HOST
    positions: Tuple[Optional[SourcePosition], ...] = ()

    _succ: Dict[int, Tuple[int, ...]] = field(
        default_factory=dict, init=False, repr=False, compare=False)
    _pred: Dict[int, Tuple[int, ...]] = field(
        default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.exit < 0:
            object.__setattr__(self, "exit", len(self.instructions) - 1)
        succ: Dict[int, List[int]] = defaultdict(list)
        pred: Dict[int, List[int]] = defaultdict(list)
        for src, dst in self.edges:
            succ[src].append(dst)
            pred[dst].append(src)
        object.__setattr__(self, "_succ", {k: tuple(v) for k, v in succ.items()})
        object.__setattr__(self, "_pred", {k: tuple(v) for k, v in pred.items()})

    def __len__(self) -> int:
        return len(self.instructions)

    def successors(self, index: int) -> Tuple[int, ...]:
        return self._succ.get(index, ())

    def predecessors(self, index: int) -> Tuple[int, ...]:
        return self._pred.get(index, ())

    def instruction(self, index: int) -> Instruction:
        return self.instructions[index]

    def instruction_kind(self, index: int) -> InstructionKind:
        return self.instructions[index].kind

    def position(self, index: int) -> Optional[SourcePosition]:
        if 0 <= index < len(self.positions):
            return self.positions[index]
        return None

    def __repr__(self) -> str:
        return (f"Procedure({self.pid}:{self.name}, runtime={self.runtime.value}, "
                f"instructions={len(self.instructions)})")


# ═══════════════════════════════════════════════════════════════════════════
# §4  CALL-GRAPH PROVIDER PROTOCOL AND THE ARENA IMPLEMENTATION
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class CallGraphProvider(Protocol):
    """What the supergraph needs from a frontend.

    ``possible_targets`` is treated as ground truth, including its
    imprecision: an empty result means "unresolved", several results mean
    dynamic dispatch.
    """

    def procedures(self) -> Sequence[Procedure]:
        ...

    def possible_targets(self, pid: int, index: int) -> FrozenSet[int]:
        ...

    def entrypoints(self) -> Sequence[int]:
        ...


class Program:
    """Arena of procedures plus the may-call-target table.

    Parameters
    ----------
    procedures
        Procedures in arena order; ``procedures[i].pid`` must equal ``i``.
    targets
        ``{(caller pid, call index): [callee pid, ...]}``.  Missing keys are
        unresolved calls.
    entrypoints
        Procedure ids the analysis starts from.
    """

    def __init__(
        self,
        procedures: Sequence[Procedure],
        targets: Optional[Mapping[Tuple[int, int], Iterable[int]]] = None,
        entrypoints: Sequence[int] = (),
    ) -> None:
        self._procedures: Tuple[Procedure, ...] = tuple(procedures)
        self._targets: Dict[Tuple[int, int], FrozenSet[int]] = {
            site: frozenset(callees) for site, callees in (targets or {}).items()
        }
        self._entrypoints: Tuple[int, ...] = tuple(entrypoints)

    # -- CallGraphProvider ---------------------------------------------------

    def procedures(self) -> Sequence[Procedure]:
        return self._procedures

    def possible_targets(self, pid: int, index: int) -> FrozenSet[int]:
        return self._targets.get((pid, index), frozenset())

    def entrypoints(self) -> Sequence[int]:
        return self._entrypoints

    # -- convenience -----------------------------------------------------------

    def procedure(self, pid: int) -> Procedure:
        return self._procedures[pid]

    def __len__(self) -> int:
        return len(self._procedures)

    def __repr__(self) -> str:
        return (f"Program(procedures={len(self._procedures)}, "
                f"call_sites={len(self._targets)}, entrypoints={self._entrypoints})")


# ═══════════════════════════════════════════════════════════════════════════
# §5  BUILDERS
# ═══════════════════════════════════════════════════════════════════════════

class ProcedureBuilder:
    """Appends instructions to one procedure.

    Index 0 is always a synthetic ``entry`` instruction; a synthetic
    ``exit`` instruction is appended by :meth:`ProgramBuilder.build`.
    Instructions fall through to the next one unless :meth:`cut` (or
    :meth:`ret`) ends the straight-line block.
    """

    def __init__(
        self,
        owner: "ProgramBuilder",
        pid: int,
        name: str,
        params: Tuple[str, ...],
        runtime: Runtime,
        file: str,
    ) -> None:
        self._owner = owner
        self.pid = pid
        self.name = name
        self.params = params
        self.runtime = runtime
        self.file = file
        self._instructions: List[Instruction] = [Nop("entry")]
        self._positions: List[Optional[SourcePosition]] = [None]
        self._edges: List[Tuple[int, int]] = []
        self._to_exit: List[int] = []
        # call index -> explicit callee names (None = resolve by name)
        self._targets: Dict[int, Optional[Tuple[str, ...]]] = {}
        self._fallthrough = True
        self._line = 0

    # -- low level -------------------------------------------------------------

    def emit(self, instruction: Instruction, *, line: Optional[int] = None) -> int:
        """Append *instruction* and return its index."""
        index = len(self._instructions)
        if self._fallthrough:
            self._edges.append((index - 1, index))
        self._fallthrough = True
        self._line = line if line is not None else self._line + 1
        self._instructions.append(instruction)
        self._positions.append(
            SourcePosition(self.file, self._line, text=str(instruction)))
        return index

    def link(self, src: int, dst: int) -> "ProcedureBuilder":
        """Add an explicit local edge (branches, loops)."""
        self._edges.append((src, dst))
        return self

    def cut(self) -> "ProcedureBuilder":
        """Do not fall through from the last instruction to the next one."""
        self._fallthrough = False
        return self

    @property
    def last(self) -> int:
        return len(self._instructions) - 1

    # -- instruction helpers ---------------------------------------------------

    def assign(self, target: Union[str, Ref], *sources: Union[str, Ref],
               line: Optional[int] = None) -> int:
        return self.emit(
            Assign(_as_ref(target), tuple(_as_ref(s) for s in sources)), line=line)

    def const(self, target: Union[str, Ref], *, line: Optional[int] = None) -> int:
        return self.emit(Assign(_as_ref(target)), line=line)

    def call(
        self,
        callee: str,
        args: Sequence[str] = (),
        *,
        result: Optional[str] = None,
        receiver: Optional[str] = None,
        constants: Sequence[Optional[str]] = (),
        targets: Optional[Sequence[str]] = None,
        line: Optional[int] = None,
    ) -> int:
        """Emit a call.

        ``targets=None`` resolves *callee* by name at build time (unresolved
        if no such procedure exists); an explicit sequence, possibly empty,
        overrides that.
        """
        index = self.emit(
            Call(callee, tuple(args), result, receiver, tuple(constants)), line=line)
        self._targets[index] = tuple(targets) if targets is not None else None
        return index

    def store(self, structure: str, key: Optional[str], value: Optional[str] = None,
              *, line: Optional[int] = None) -> int:
        return self.emit(StructureStore(structure, key, value), line=line)

    def remove(self, structure: str, key: Optional[str], *,
               line: Optional[int] = None) -> int:
        return self.emit(StructureStore(structure, key, None, remove=True), line=line)

    def load(self, target: str, structure: str, key: Optional[str], *,
             line: Optional[int] = None) -> int:
        return self.emit(StructureLoad(target, structure, key), line=line)

    def merge(self, target: str, source: str, *, line: Optional[int] = None) -> int:
        return self.emit(StructureMerge(target, source), line=line)

    def nop(self, label: str = "", *, line: Optional[int] = None) -> int:
        return self.emit(Nop(label), line=line)

    def ret(self, value: Optional[str] = None, *, line: Optional[int] = None) -> int:
        """Return *value* (or nothing) and jump to the exit."""
        if value is None:
            index = self.emit(Nop("return"), line=line)
        else:
            index = self.emit(Assign(LocalRef(RETURN_LOCAL), (_as_ref(value),)),
                              line=line)
        self._to_exit.append(index)
        self.cut()
        return index

    # -- finalisation ----------------------------------------------------------

    def _finish(self) -> Tuple[Procedure, Dict[int, Optional[Tuple[str, ...]]]]:
        instructions = list(self._instructions)
        positions = list(self._positions)
        edges = list(self._edges)
        exit_index = len(instructions)
        instructions.append(Nop("exit"))
        positions.append(None)
        if self._fallthrough:
            edges.append((exit_index - 1, exit_index))
        for index in self._to_exit:
            edges.append((index, exit_index))
        proc = Procedure(
            pid=self.pid,
            name=self.name,
            instructions=tuple(instructions),
            edges=tuple(dict.fromkeys(edges)),
            params=self.params,
            entry=0,
            exit=exit_index,
            runtime=self.runtime,
            positions=tuple(positions),
        )
        return proc, dict(self._targets)


class ProgramBuilder:
    """Assembles a :class:`Program` procedure by procedure."""

    def __init__(self, file: str = "<program>") -> None:
        self.file = file
        self._procs: List[ProcedureBuilder] = []
        self._entrypoints: List[str] = []

    def procedure(
        self,
        name: str,
        params: Sequence[str] = (),
        *,
        runtime: Runtime = Runtime.HOST,
        file: Optional[str] = None,
    ) -> ProcedureBuilder:
        pb = ProcedureBuilder(self, len(self._procs), name, tuple(params),
                              runtime, file or self.file)
        self._procs.append(pb)
        return pb

    def entrypoint(self, name: str) -> "ProgramBuilder":
        self._entrypoints.append(name)
        return self

    def build(self) -> Program:
        by_name: Dict[str, List[int]] = defaultdict(list)
        for pb in self._procs:
            by_name[pb.name].append(pb.pid)

        procedures: List[Procedure] = []
        targets: Dict[Tuple[int, int], List[int]] = {}
        for pb in self._procs:
            proc, call_targets = pb._finish()
            procedures.append(proc)
            for index, names in call_targets.items():
                if names is None:
                    call = proc.instruction(index)
                    resolved = by_name.get(call.callee, [])
                else:
                    resolved = []
                    for n in names:
                        if n not in by_name:
                            raise KeyError(f"unknown call target {n!r} in {pb.name}")
                        resolved.extend(by_name[n])
                if resolved:
                    targets[(proc.pid, index)] = resolved
                else:
                    logger.debug("unresolved call %s in %s@%d",
                                 proc.instruction(index), pb.name, index)

        entry_ids = []
        for name in self._entrypoints:
            if name not in by_name:
                raise KeyError(f"unknown entrypoint {name!r}")
            entry_ids.extend(by_name[name])
        return Program(procedures, targets, entry_ids)

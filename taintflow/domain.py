"""
taintflow/domain.py
===================

Dataflow facts and the fact ↔ integer-id bijection.

Facts
-----
``ZERO``
    The distinguished Λ fact (Reps–Horwitz–Sagiv "0-node").  It holds at
    every reachable node, is never killed, and is what lets flow functions
    *generate* facts independently of existing taint.
``Local(name)``
    The value of a local (or formal parameter) is tainted.
``Field(base, name)``
    Field *name* of the object referenced by local *base* is tainted.
``Global(name)``
    A static/global variable is tainted.
``Entry(structure, key)``
    The entry *key* of the map/bindings store referenced by local
    *structure* is tainted.  ``key`` is ``ANY_KEY`` after a write whose key
    was not a compile-time constant.

Local, Field and Entry facts are *rooted* at a local name and are relative
to the procedure of the node at which they hold.

The :class:`Domain` interns facts lazily as flow functions produce them.
Ids are dense, append-only and stable for the lifetime of the domain;
``ZERO`` is always id ``0``.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Union

__all__ = [
    "ZeroFact",
    "ZERO",
    "AnyKey",
    "ANY_KEY",
    "Local",
    "Field",
    "Global",
    "Entry",
    "Fact",
    "root_of",
    "rebase",
    "Domain",
]


@dataclass(frozen=True)
class ZeroFact:
    def __repr__(self) -> str:
        return "Λ"


ZERO = ZeroFact()


@dataclass(frozen=True)
class AnyKey:
    """Stands for every key of a structure."""

    def __repr__(self) -> str:
        return "*"


ANY_KEY = AnyKey()


@dataclass(frozen=True)
class Local:
    name: str

    def __repr__(self) -> str:
        return f"Local({self.name})"


@dataclass(frozen=True)
class Field:
    base: str
    name: str

    def __repr__(self) -> str:
        return f"Field({self.base}.{self.name})"


@dataclass(frozen=True)
class Global:
    name: str

    def __repr__(self) -> str:
        return f"Global({self.name})"


@dataclass(frozen=True)
class Entry:
    structure: str
    key: Union[str, AnyKey]

    @property
    def is_weak(self) -> bool:
        return self.key is ANY_KEY or isinstance(self.key, AnyKey)

    def __repr__(self) -> str:
        key = "*" if self.is_weak else repr(self.key)
        return f"Entry({self.structure}[{key}])"


Fact = Union[ZeroFact, Local, Field, Global, Entry]


def root_of(fact: Fact) -> Optional[str]:
    """The local a fact hangs off, or ``None`` for ZERO and globals."""
    if isinstance(fact, Local):
        return fact.name
    if isinstance(fact, Field):
        return fact.base
    if isinstance(fact, Entry):
        return fact.structure
    return None


def rebase(fact: Fact, new_root: str) -> Fact:
    """Move a rooted fact onto another local, keeping its access path."""
    if isinstance(fact, Local):
        return Local(new_root)
    if isinstance(fact, Field):
        return Field(new_root, fact.name)
    if isinstance(fact, Entry):
        return Entry(new_root, fact.key)
    raise TypeError(f"{fact!r} is not rooted at a local")


class Domain:
    """Bidirectional fact ↔ id table.

    Lookups are lock-free; registration of a new fact is serialized so that
    one domain can be shared by concurrently running solves.
    """

    def __init__(self) -> None:
        self._facts: List[Fact] = [ZERO]
        self._ids: Dict[Fact, int] = {ZERO: 0}
        self._lock = threading.Lock()

    def get_or_create(self, fact: Fact) -> int:
        fid = self._ids.get(fact)
        if fid is not None:
            return fid
        with self._lock:
            fid = self._ids.get(fact)
            if fid is None:
                fid = len(self._facts)
                self._facts.append(fact)
                self._ids[fact] = fid
        return fid

    def lookup(self, fid: int) -> Fact:
        return self._facts[fid]

    def id_of(self, fact: Fact) -> int:
        """Id of an already registered fact; ``KeyError`` otherwise."""
        return self._ids[fact]

    def __contains__(self, fact: object) -> bool:
        return fact in self._ids

    def __len__(self) -> int:
        return len(self._facts)

    def __iter__(self) -> Iterator[Fact]:
        return iter(list(self._facts))

    def __repr__(self) -> str:
        return f"Domain(facts={len(self._facts)})"

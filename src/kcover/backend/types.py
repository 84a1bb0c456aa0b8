"""
Data model shared by the coverage backends.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Set, Tuple


@dataclass(frozen=True)
class Module:
    """An object file under analysis.

    An empty `name` denotes the primary kernel image; `addr` is the base load
    address reported by the running system.
    """

    path: str
    name: str = ""
    addr: int = 0

    @property
    def is_primary(self) -> bool:
        return self.name == ""


@dataclass(frozen=True)
class ObjectUnit:
    name: str


@dataclass(frozen=True)
class Symbol(ObjectUnit):
    module: Module
    start: int
    end: int


@dataclass(frozen=True)
class CompileUnit(ObjectUnit):
    module: Module


@dataclass(frozen=True)
class PcRange:
    start: int
    end: int
    unit: CompileUnit


@dataclass(frozen=True)
class SectionHeader:
    name: str
    flags: int = 0
    addr: int = 0
    size: int = 0
    addralign: int = 0


class TraceCallback(enum.IntEnum):
    NONE = 0
    PC = 1
    CMP = 2


@dataclass
class SymbolInfo:
    """Scratch state carried from symbol classification to relocation scanning.

    Indices are raw symbol table indices, the same numbering relocation
    records use to refer to symbols.
    """

    text_addr: int = 0
    trace_pc_idx: Set[int] = field(default_factory=set)
    trace_cmp_idx: Set[int] = field(default_factory=set)
    trace_pc: Set[int] = field(default_factory=set)
    trace_cmp: Set[int] = field(default_factory=set)


@dataclass(frozen=True)
class CoverPoints:
    """Addresses of calls to the coverage callbacks. Order carries no meaning."""

    trace_pc: Tuple[int, ...] = ()
    trace_cmp: Tuple[int, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "trace_pc", tuple(self.trace_pc))
        object.__setattr__(self, "trace_cmp", tuple(self.trace_cmp))

    def __len__(self) -> int:
        return len(self.trace_pc) + len(self.trace_cmp)


@dataclass
class ModuleResult:
    """Everything one module contributes to the aggregate result."""

    module: Module
    symbols: List[Symbol] = field(default_factory=list)
    cover_points: CoverPoints = field(default_factory=CoverPoints)
    ranges: List[PcRange] = field(default_factory=list)
    units: List[CompileUnit] = field(default_factory=list)


@dataclass(frozen=True)
class Impl:
    """The merged extraction result for a kernel image and its modules."""

    modules: Tuple[Module, ...] = ()
    symbols: Tuple[Symbol, ...] = ()
    units: Tuple[CompileUnit, ...] = ()
    ranges: Tuple[PcRange, ...] = ()
    cover_points: CoverPoints = CoverPoints()
    skipped_modules: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    compiler_version: str = ""


@dataclass
class ImplBuilder:
    """Accumulates per-module results until the runner freezes them."""

    modules: List[Module] = field(default_factory=list)
    symbols: List[Symbol] = field(default_factory=list)
    units: List[CompileUnit] = field(default_factory=list)
    ranges: List[PcRange] = field(default_factory=list)
    trace_pc: List[int] = field(default_factory=list)
    trace_cmp: List[int] = field(default_factory=list)
    skipped_modules: Dict[str, str] = field(default_factory=dict)

    def add(self, result: ModuleResult) -> None:
        self.modules.append(result.module)
        self.symbols.extend(result.symbols)
        self.units.extend(result.units)
        self.ranges.extend(result.ranges)
        self.trace_pc.extend(result.cover_points.trace_pc)
        self.trace_cmp.extend(result.cover_points.trace_cmp)

    def skip(self, name: str, reason: str) -> None:
        self.skipped_modules[name] = reason

    def build(self, compiler_version: str = "") -> Impl:
        return Impl(
            modules=tuple(self.modules),
            symbols=tuple(self.symbols),
            units=tuple(self.units),
            ranges=tuple(self.ranges),
            cover_points=CoverPoints(self.trace_pc, self.trace_cmp),
            skipped_modules=MappingProxyType(dict(self.skipped_modules)),
            compiler_version=compiler_version,
        )

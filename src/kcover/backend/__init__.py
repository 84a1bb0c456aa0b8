"""
Coverage backends: recover coverage callback sites, symbols and source
ranges from compiled objects.
"""

from kcover.backend.dwarf import DwarfParams, HostModule, make_dwarf
from kcover.backend.elf import ElfBackend, make_elf
from kcover.backend.interface import Backend
from kcover.backend.types import (
    CompileUnit,
    CoverPoints,
    Impl,
    Module,
    PcRange,
    Symbol,
    SymbolInfo,
)

__all__ = [
    "Backend",
    "CompileUnit",
    "CoverPoints",
    "DwarfParams",
    "ElfBackend",
    "HostModule",
    "Impl",
    "Module",
    "PcRange",
    "Symbol",
    "SymbolInfo",
    "make_dwarf",
    "make_elf",
]

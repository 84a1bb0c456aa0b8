"""
Operations a binary format provides to the coverage extraction runner.
"""

from __future__ import annotations

from typing import List, Protocol, Tuple

from ..targets import Target
from .types import CompileUnit, CoverPoints, Module, PcRange, Symbol, SymbolInfo


class Backend(Protocol):
    def read_symbols(self, module: Module, info: SymbolInfo) -> List[Symbol]: ...

    def read_text_data(self, module: Module) -> bytes: ...

    def read_module_cover_points(
        self, target: Target, module: Module, info: SymbolInfo
    ) -> CoverPoints: ...

    def read_text_ranges(
        self, module: Module
    ) -> Tuple[List[PcRange], List[CompileUnit]]: ...

    def get_module_offset(
        self, is_arm64: bool, is_kernel_61_or_earlier: bool, path: str
    ) -> int: ...

    def get_compiler_version(self, path: str) -> str: ...

"""
Compile units and PC ranges from decoded DWARF, and the extraction runner
that drives a backend over a kernel image and its loaded modules.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from elftools.common.exceptions import DWARFError, ELFError
from elftools.dwarf.ranges import BaseAddressEntry

from ..exceptions import CoverageError, DebugInfoError
from ..targets import Target
from .interface import Backend
from .types import (
    CompileUnit,
    Impl,
    ImplBuilder,
    Module,
    ModuleResult,
    PcRange,
    SymbolInfo,
)

logger = logging.getLogger(__name__)

PcFixFn = Callable[[int, int], Optional[Tuple[int, int]]]

# Tags a top-level unit DIE may carry.
_UNIT_TAGS = ("DW_TAG_compile_unit", "DW_TAG_partial_unit", "DW_TAG_skeleton_unit")


# Address-class forms. pyelftools resolves the indexed ones through
# .debug_addr before the DIE is handed out.
_ADDRESS_FORMS = frozenset(
    (
        "DW_FORM_addr",
        "DW_FORM_addrx",
        "DW_FORM_addrx1",
        "DW_FORM_addrx2",
        "DW_FORM_addrx3",
        "DW_FORM_addrx4",
        "DW_FORM_GNU_addr_index",
    )
)


def _decode_name(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _high_pc(low_pc: int, attr) -> int:
    # Address forms hold an address, constant forms an offset from low_pc.
    if attr.form in _ADDRESS_FORMS:
        return attr.value
    return low_pc + attr.value


def _die_ranges(dwarf, cu, die) -> Iterator[Tuple[int, int]]:
    attrs = die.attributes
    low_pc = attrs["DW_AT_low_pc"].value if "DW_AT_low_pc" in attrs else None

    if "DW_AT_ranges" in attrs:
        rangelists = dwarf.range_lists()
        if rangelists is None:
            return
        # For DW_FORM_rnglistx pyelftools has already turned the index into
        # a .debug_rnglists offset, so every form is an offset here.
        offset = attrs["DW_AT_ranges"].value
        base = low_pc or 0
        for entry in rangelists.get_range_list_at_offset(offset, cu=cu):
            if isinstance(entry, BaseAddressEntry):
                base = entry.base_address
                continue
            if getattr(entry, "is_absolute", False):
                yield entry.begin_offset, entry.end_offset
            else:
                yield base + entry.begin_offset, base + entry.end_offset
        return

    if low_pc is not None and "DW_AT_high_pc" in attrs:
        yield low_pc, _high_pc(low_pc, attrs["DW_AT_high_pc"])


def read_text_ranges(
    dwarf, module: Module, pc_fix: Optional[PcFixFn] = None
) -> Tuple[List[PcRange], List[CompileUnit]]:
    """
    Collect compile units and their PC ranges from a pyelftools DWARFInfo.

    Ranges are relocated by the module base address. `pc_fix` may rewrite a
    range or reject it by returning None.
    """
    ranges: List[PcRange] = []
    units: List[CompileUnit] = []
    try:
        for cu in dwarf.iter_CUs():
            die = cu.get_top_DIE()
            if die.tag not in _UNIT_TAGS:
                raise DebugInfoError(f"found unexpected tag {die.tag} on top level")
            name_attr = die.attributes.get("DW_AT_name")
            if name_attr is None:
                continue
            unit = CompileUnit(name=_decode_name(name_attr.value), module=module)
            units.append(unit)
            for start, end in _die_ranges(dwarf, cu, die):
                if pc_fix is not None:
                    fixed = pc_fix(start, end)
                    if fixed is None:
                        continue
                    start, end = fixed
                ranges.append(
                    PcRange(start=start + module.addr, end=end + module.addr, unit=unit)
                )
    except (ELFError, DWARFError) as e:
        raise DebugInfoError(f"failed to read DWARF of {module.path}: {e}") from e
    return ranges, units


@dataclass(frozen=True)
class HostModule:
    """A module loaded on the target as reported by /proc/modules."""

    name: str
    addr: int


@dataclass
class DwarfParams:
    target: Target
    obj_dir: str
    kernel_object: str = ""
    module_objs: Sequence[str] = ()
    host_modules: Sequence[HostModule] = ()
    is_kernel_61_or_earlier: bool = False
    workers: int = 1

    def __post_init__(self):
        if not self.kernel_object:
            self.kernel_object = os.path.join(self.obj_dir, "vmlinux")


def _normalize_module_name(name: str) -> str:
    return name.replace("-", "_")


def find_module_objects(search_dirs: Sequence[str]) -> Dict[str, str]:
    """Map module names to the .ko files found under `search_dirs`."""
    found: Dict[str, str] = {}
    for search_dir in search_dirs:
        for root, _, files in os.walk(search_dir):
            for file_name in sorted(files):
                if not file_name.endswith(".ko"):
                    continue
                name = _normalize_module_name(file_name[: -len(".ko")])
                path = os.path.join(root, file_name)
                if name in found:
                    logger.debug(f"module {name}: ignoring {path}, using {found[name]}")
                    continue
                found[name] = path
    return found


def _build_modules(params: DwarfParams, backend: Backend) -> List[Module]:
    modules = [Module(path=params.kernel_object)]
    if not params.host_modules:
        return modules
    objects = find_module_objects([params.obj_dir, *params.module_objs])
    for host in params.host_modules:
        path = objects.get(_normalize_module_name(host.name))
        if path is None:
            logger.info(f"failed to find object file for module {host.name}")
            continue
        offset = backend.get_module_offset(
            params.target.is_arm64, params.is_kernel_61_or_earlier, path
        )
        modules.append(Module(path=path, name=host.name, addr=host.addr + offset))
    return modules


def extract_module(target: Target, module: Module, backend: Backend) -> ModuleResult:
    info = SymbolInfo()
    symbols = backend.read_symbols(module, info)
    cover_points = backend.read_module_cover_points(target, module, info)
    ranges, units = backend.read_text_ranges(module)
    return ModuleResult(
        module=module,
        symbols=symbols,
        cover_points=cover_points,
        ranges=ranges,
        units=units,
    )


def _merge(builder: ImplBuilder, module: Module, outcome) -> None:
    if isinstance(outcome, ModuleResult):
        builder.add(outcome)
        logger.debug(
            f"{module.name or 'kernel'}: {len(outcome.symbols)} symbols, "
            f"{len(outcome.cover_points)} cover points, {len(outcome.units)} units"
        )
        return
    if module.is_primary:
        raise outcome
    logger.warning(f"skipping module {module.name}: {outcome}")
    builder.skip(module.name, str(outcome))


def _extract_or_error(target: Target, module: Module, backend: Backend):
    try:
        return extract_module(target, module, backend)
    except (CoverageError, OSError, ELFError) as e:
        return e


def make_dwarf(params: DwarfParams, backend: Backend) -> Impl:
    """
    Run the backend over the kernel image and every loaded module.

    A failure on the kernel image aborts the whole extraction; a failure on
    a module drops only that module's contribution.
    """
    modules = _build_modules(params, backend)
    builder = ImplBuilder()

    if params.workers > 1 and len(modules) > 1:
        ctx = multiprocessing.get_context("spawn")
        with ProcessPoolExecutor(max_workers=params.workers, mp_context=ctx) as pool:
            futures = [
                pool.submit(_extract_or_error, params.target, module, backend)
                for module in modules
            ]
            for module, future in zip(modules, futures):
                _merge(builder, module, future.result())
    else:
        for module in modules:
            _merge(builder, module, _extract_or_error(params.target, module, backend))

    return builder.build(backend.get_compiler_version(params.kernel_object))

"""
ELF backend: symbols, coverage callback call sites, text ranges and module
layout recovered from a compiled kernel image or loadable module.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Tuple

from elftools.common.exceptions import DWARFError, ELFError
from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile
from elftools.elf.relocation import RelocationSection
from elftools.elf.sections import SymbolTableSection

from ..exceptions import (
    DebugInfoError,
    MissingTextSectionError,
    RelocationError,
    SymbolTableError,
)
from ..targets import Target
from .dwarf import DwarfParams, make_dwarf, read_text_ranges
from .types import (
    CompileUnit,
    CoverPoints,
    Impl,
    Module,
    PcRange,
    SectionHeader,
    Symbol,
    SymbolInfo,
    TraceCallback,
)

logger = logging.getLogger(__name__)

TRACE_PC_NAME = "__sanitizer_cov_trace_pc"
TRACE_CB_PREFIX = "__sanitizer_cov_trace_"
VENEER_PREFIX = "__"
VENEER_SUFFIX = "_veneer"

_TEXT_FLAGS = SH_FLAGS.SHF_ALLOC | SH_FLAGS.SHF_EXECINSTR
_DISCARDED_PREFIXES = (".init", ".exit")
_DEBUG_INFO_SECTIONS = (".debug_info", ".zdebug_info")

# sizeof(struct plt_record) in the arm64 kernel.
SIZEOF_PLT_RECORD = 12
# alignof(struct plt_record) in the arm64 kernel.
ALIGNOF_PLT_RECORD = 4
# L1_CACHE_BYTES in the arm64 kernel.
L1_CACHE_BYTES = 32
# NR_FTRACE_PLTS is 2 up to Linux 6.1 and 1 since 6.2.
NR_FTRACE_PLTS = {True: 2, False: 1}


def get_trace_callback_type(name: str) -> TraceCallback:
    """
    Classify a symbol name as a coverage callback.

    -fsanitize-coverage=trace-pc inserts calls to __sanitizer_cov_trace_pc()
    into every basic block, trace-cmp adds calls to functions like
    __sanitizer_cov_trace_cmp1() or __sanitizer_cov_trace_const_cmp4().

    An arm64 BL instruction only reaches +/-128M around the PC. For farther
    targets the linker inserts veneers (____<callback>_veneer), and calls to
    those count as calls to the callback itself.
    """
    if name == TRACE_PC_NAME or name == f"{VENEER_PREFIX}{TRACE_PC_NAME}{VENEER_SUFFIX}":
        return TraceCallback.PC
    if name.startswith(TRACE_CB_PREFIX) or (
        name.startswith(VENEER_PREFIX + TRACE_CB_PREFIX) and name.endswith(VENEER_SUFFIX)
    ):
        return TraceCallback.CMP
    return TraceCallback.NONE


@contextmanager
def open_elf(path: str) -> Iterator[ELFFile]:
    with open(path, "rb") as f:
        yield ELFFile(f)


def _text_section(elf: ELFFile, path: str):
    text = elf.get_section_by_name(".text")
    if text is None:
        raise MissingTextSectionError(path)
    return text


def elf_read_symbols(module: Module, info: SymbolInfo) -> List[Symbol]:
    with open_elf(module.path) as elf:
        text = _text_section(elf, module.path)
        text_start = text["sh_addr"]
        text_end = text_start + text["sh_size"]

        symtab = elf.get_section_by_name(".symtab")
        if not isinstance(symtab, SymbolTableSection):
            raise SymbolTableError(f"no symbol table in {module.path}")
        try:
            entries = list(symtab.iter_symbols())
        except ELFError as e:
            raise SymbolTableError(f"failed to read ELF symbols: {e}") from e

    if module.is_primary:
        info.text_addr = text_start

    symbols: List[Symbol] = []
    # Entry 0 is the reserved undefined symbol.
    for idx, sym in enumerate(entries[1:], start=1):
        value = sym["st_value"]
        size = sym["st_size"]
        in_text = value >= text_start and value + size <= text_end
        # Other symbol types (objects, sections, files) may be nested inside
        # a function's range and break address to symbol lookups.
        if sym["st_info"]["type"] in ("STT_FUNC", "STT_NOTYPE") and in_text and size:
            start = module.addr + value
            symbols.append(
                Symbol(name=sym.name, module=module, start=start, end=start + size)
            )

        kind = get_trace_callback_type(sym.name)
        if kind == TraceCallback.PC:
            info.trace_pc_idx.add(idx)
            if in_text:
                info.trace_pc.add(value)
        elif kind == TraceCallback.CMP:
            info.trace_cmp_idx.add(idx)
            if in_text:
                info.trace_cmp.add(value)
    return symbols


def _iter_call_relocations(
    section: RelocationSection, call_reloc_type: int
) -> Iterator[Tuple[int, int]]:
    entsize = section["sh_entsize"]
    if section["sh_size"] % entsize:
        raise RelocationError(
            f"truncated relocation section {section.name}: "
            f"size {section['sh_size']} is not a multiple of {entsize}"
        )
    try:
        for rel in section.iter_relocations():
            if rel["r_info_type"] != call_reloc_type:
                continue
            yield rel["r_offset"], rel["r_info_sym"]
    except ELFError as e:
        raise RelocationError(
            f"failed to read relocations from {section.name}: {e}"
        ) from e


def elf_read_module_cover_points(
    target: Target, module: Module, info: SymbolInfo
) -> CoverPoints:
    """
    Find coverage callback call sites by scanning RELA relocations.

    Calls to the callbacks are resolved at link or load time, so each one
    leaves a call-type relocation referring to the callback symbol. The
    relocated field sits `rela_offset` bytes past the call instruction.
    """
    trace_pc: List[int] = []
    trace_cmp: List[int] = []
    call_reloc_type = target.call_reloc_type
    rela_offset = target.rela_offset
    with open_elf(module.path) as elf:
        try:
            sections = list(elf.iter_sections())
        except ELFError as e:
            raise RelocationError(f"failed to read sections of {module.path}: {e}") from e
        for section in sections:
            if not isinstance(section, RelocationSection) or not section.is_RELA():
                continue
            for offset, sym_idx in _iter_call_relocations(section, call_reloc_type):
                pc = module.addr + offset - rela_offset
                if sym_idx in info.trace_pc_idx:
                    trace_pc.append(pc)
                elif sym_idx in info.trace_cmp_idx:
                    trace_cmp.append(pc)
    return CoverPoints(trace_pc=trace_pc, trace_cmp=trace_cmp)


class KaslrRangeFixer:
    """
    Validates DWARF PC ranges of a relocatable kernel image.

    With CONFIG_RANDOMIZE_BASE=y .text starts at e.g. 0xffffffff81000000 and
    symbols point there as well, but PC ranges may point to addresses around
    0. Ranges outside the text window are shifted by the text address and
    checked again; ranges that are still invalid are dropped and counted.
    """

    def __init__(self, text_addr: int, text_size: int):
        self.text_addr = text_addr
        self.text_end = text_addr + text_size
        self.dropped = 0

    def _valid(self, start: int, end: int) -> bool:
        return start < end and start >= self.text_addr and end <= self.text_end

    def __call__(self, start: int, end: int) -> Optional[Tuple[int, int]]:
        if self._valid(start, end):
            return start, end
        # The shifted range is only approximately right: it is unclear whether
        # some extra offset on top of the text address is needed.
        start += self.text_addr
        end += self.text_addr
        if self._valid(start, end):
            return start, end
        self.dropped += 1
        return None


def elf_read_text_ranges(module: Module) -> Tuple[List[PcRange], List[CompileUnit]]:
    with open_elf(module.path) as elf:
        text = _text_section(elf, module.path)
        kaslr = elf.get_section_by_name(".rela.text") is not None

        dwarf = None
        dwarf_err: Optional[Exception] = None
        # has_dwarf_info() also accepts a lone .eh_frame, which has no units.
        if any(elf.get_section_by_name(n) is not None for n in _DEBUG_INFO_SECTIONS):
            try:
                dwarf = elf.get_dwarf_info()
            except (ELFError, DWARFError) as e:
                dwarf_err = e
        if dwarf is None:
            if not module.is_primary:
                logger.warning(f"ignoring module {module.name} without DEBUG_INFO")
                return [], []
            reason = f": {dwarf_err}" if dwarf_err else ""
            raise DebugInfoError(
                f"failed to parse DWARF in {module.path}{reason} "
                "(set CONFIG_DEBUG_INFO=y on linux)"
            )

        pc_fix = KaslrRangeFixer(text["sh_addr"], text["sh_size"]) if kaslr else None
        ranges, units = read_text_ranges(dwarf, module, pc_fix)

    if pc_fix is not None and pc_fix.dropped:
        logger.info(
            f"{module.name or 'kernel'}: dropped {pc_fix.dropped} PC ranges "
            "outside of .text"
        )
    return ranges, units


def elf_read_text_data(module: Module) -> bytes:
    with open_elf(module.path) as elf:
        return _text_section(elf, module.path).data()


def align_up(addr: int, align: int) -> int:
    if align == 0:
        return addr
    return (addr + align - 1) & ~(align - 1)


def section_headers(elf: ELFFile) -> List[SectionHeader]:
    return [
        SectionHeader(
            name=s.name,
            flags=s["sh_flags"],
            addr=s["sh_addr"],
            size=s["sh_size"],
            addralign=s["sh_addralign"],
        )
        for s in elf.iter_sections()
    ]


def simulate_module_load(
    text: SectionHeader,
    sections: Sequence[SectionHeader],
    is_arm64: bool,
    is_kernel_61_or_earlier: bool,
) -> int:
    """
    Calculate the offset of a module's .text within its loaded image.

    /proc/modules only reports the base address, which is the beginning of
    the first code section. That section is not necessarily .text (on
    Android it may be .plt). The offset is the sum of the aligned sizes of
    the sections preceding .text that have SHF_ALLOC and SHF_EXECINSTR set
    and are not .init/.exit sections.

    On arm64 module_frob_arch_sections() overrides the layout of two
    sections:
      - .plt gets L1_CACHE_BYTES alignment and a size of
        sizeof(struct plt_record) * (1 + count_plts()). Relocations needing
        a PLT entry are rare and count_plts() is assumed to be 0.
      - .text.ftrace_trampoline gets alignof(struct plt_record) alignment
        and a size of sizeof(struct plt_record) * NR_FTRACE_PLTS.
    """
    off = 0
    for s in sections:
        if s.flags & _TEXT_FLAGS != _TEXT_FLAGS or s.name.startswith(_DISCARDED_PREFIXES):
            continue
        size = s.size
        addralign = s.addralign
        if is_arm64:
            if s.name == ".plt":
                addralign = L1_CACHE_BYTES
                size = SIZEOF_PLT_RECORD
            elif s.name == ".text.ftrace_trampoline":
                addralign = ALIGNOF_PLT_RECORD
                size = NR_FTRACE_PLTS[is_kernel_61_or_earlier] * SIZEOF_PLT_RECORD
        off = align_up(off, addralign)
        if s.name == text.name:
            return off
        off += size
    return 0


def elf_get_module_offset(is_arm64: bool, is_kernel_61_or_earlier: bool, path: str) -> int:
    try:
        with open_elf(path) as elf:
            sections = section_headers(elf)
    except (OSError, ELFError) as e:
        logger.debug(f"cannot compute module offset of {path}: {e}")
        return 0
    text = next((s for s in sections if s.name == ".text"), None)
    if text is None:
        return 0
    return simulate_module_load(text, sections, is_arm64, is_kernel_61_or_earlier)


def elf_get_compiler_version(path: str) -> str:
    try:
        with open_elf(path) as elf:
            comment = elf.get_section_by_name(".comment")
            if comment is None:
                return ""
            data = comment.data()
    except (OSError, ELFError) as e:
        logger.debug(f"cannot read compiler version of {path}: {e}")
        return ""
    return data.decode("utf-8", errors="replace")


class ElfBackend:
    def read_symbols(self, module: Module, info: SymbolInfo) -> List[Symbol]:
        return elf_read_symbols(module, info)

    def read_text_data(self, module: Module) -> bytes:
        return elf_read_text_data(module)

    def read_module_cover_points(
        self, target: Target, module: Module, info: SymbolInfo
    ) -> CoverPoints:
        return elf_read_module_cover_points(target, module, info)

    def read_text_ranges(self, module: Module) -> Tuple[List[PcRange], List[CompileUnit]]:
        return elf_read_text_ranges(module)

    def get_module_offset(
        self, is_arm64: bool, is_kernel_61_or_earlier: bool, path: str
    ) -> int:
        return elf_get_module_offset(is_arm64, is_kernel_61_or_earlier, path)

    def get_compiler_version(self, path: str) -> str:
        return elf_get_compiler_version(path)


def make_elf(params: DwarfParams) -> Impl:
    return make_dwarf(params, ElfBackend())

import dataclasses
import logging

import pytest

from kcover.backend import (
    CoverPoints,
    DwarfParams,
    ElfBackend,
    HostModule,
    Module,
    Symbol,
    make_dwarf,
    make_elf,
)
from kcover.backend.dwarf import find_module_objects
from kcover.backend.types import CompileUnit, PcRange
from kcover.exceptions import DebugInfoError, MissingTextSectionError

from tests.elf_builder import (
    ET_EXEC,
    R_X86_64_PLT32,
    SHF_ALLOC,
    SHF_EXECINSTR,
    STT_NOTYPE,
    ElfBuilder,
    Unit,
)

KERNEL_TEXT = 0xFFFFFFFF81000000
MODULE_BASE = 0xFFFFFFFFA0000000


def _write_kernel(write_elf, *, debug_info=True):
    b = ElfBuilder(elf_type=ET_EXEC)
    text = b.add_text(size=0x1000, addr=KERNEL_TEXT)
    b.add_symbol("start_kernel", value=KERNEL_TEXT + 0x100, size=0x80, shndx=text)
    b.add_comment("GCC: (GNU) 13.2.0")
    if debug_info:
        b.add_debug_info([Unit("init/main.c", KERNEL_TEXT + 0x100, KERNEL_TEXT + 0x180)])
    return write_elf(b, "build/vmlinux")


def _write_module(write_elf, file_name):
    b = ElfBuilder()
    b.add_section(
        ".noinstr.text", flags=SHF_ALLOC | SHF_EXECINSTR, data=b"\x90" * 0x20, addralign=16
    )
    text = b.add_text(size=0x40)
    b.add_symbol("e1000_probe", value=0x10, size=0x10, shndx=text)
    trace_pc = b.add_symbol("__sanitizer_cov_trace_pc", type=STT_NOTYPE)
    b.add_rela(text, [(0x14, trace_pc, R_X86_64_PLT32)])
    return write_elf(b, file_name)


def _params(amd64, kernel, **kwargs):
    obj_dir = kernel.rsplit("/", 1)[0]
    return DwarfParams(target=amd64, obj_dir=obj_dir, **kwargs)


def _extract(target, kernel, **kwargs):
    return make_elf(_params(target, kernel, **kwargs))


def test_kernel_only(write_elf, amd64):
    kernel = _write_kernel(write_elf)
    impl = _extract(amd64, kernel)

    assert impl.modules == (Module(path=kernel),)
    assert [(s.name, s.start, s.end) for s in impl.symbols] == [
        ("start_kernel", KERNEL_TEXT + 0x100, KERNEL_TEXT + 0x180)
    ]
    assert [u.name for u in impl.units] == ["init/main.c"]
    assert len(impl.ranges) == 1
    assert impl.compiler_version.startswith("GCC: (GNU) 13.2.0")
    assert impl.skipped_modules == {}


def test_default_kernel_object_path(tmp_path, amd64):
    params = DwarfParams(target=amd64, obj_dir=str(tmp_path))
    assert params.kernel_object == str(tmp_path / "vmlinux")


def test_modules_are_relocated_and_merged(write_elf, amd64, caplog):
    kernel = _write_kernel(write_elf)
    module_path = _write_module(write_elf, "build/drivers/net/e1000.ko")

    with caplog.at_level(logging.WARNING):
        impl = _extract(
            amd64,
            kernel,
            host_modules=[HostModule("e1000", MODULE_BASE), HostModule("missing", 0x1)],
        )

    # .noinstr.text precedes .text in the loaded image.
    module = Module(path=module_path, name="e1000", addr=MODULE_BASE + 0x20)
    assert impl.modules == (Module(path=kernel), module)
    assert Symbol(
        name="e1000_probe", module=module, start=module.addr + 0x10, end=module.addr + 0x20
    ) in impl.symbols
    assert impl.cover_points.trace_pc == (module.addr + 0x14 - 1,)
    # The module has no DWARF: it contributes symbols and cover points only.
    assert [u.module.name for u in impl.units] == [""]
    assert "ignoring module e1000 without DEBUG_INFO" in caplog.text


def test_broken_module_is_skipped(write_elf, amd64):
    kernel = _write_kernel(write_elf)
    b = ElfBuilder()
    b.add_section(".data", data=b"\x00" * 8, flags=SHF_ALLOC)
    write_elf(b, "build/broken.ko")

    impl = _extract(amd64, kernel, host_modules=[HostModule("broken", MODULE_BASE)])
    assert "broken" in impl.skipped_modules
    assert "missing text section" in impl.skipped_modules["broken"]
    assert [m.name for m in impl.modules] == [""]
    assert len(impl.symbols) == 1


def test_kernel_without_debug_info_is_fatal(write_elf, amd64):
    kernel = _write_kernel(write_elf, debug_info=False)
    with pytest.raises(DebugInfoError):
        _extract(amd64, kernel)


def test_missing_kernel_is_fatal(tmp_path, amd64):
    with pytest.raises(FileNotFoundError):
        make_elf(DwarfParams(target=amd64, obj_dir=str(tmp_path)))


def test_parallel_extraction_matches_serial(write_elf, amd64):
    kernel = _write_kernel(write_elf)
    _write_module(write_elf, "build/drivers/net/e1000.ko")
    _write_module(write_elf, "build/drivers/net/igb.ko")
    hosts = [HostModule("e1000", MODULE_BASE), HostModule("igb", MODULE_BASE + 0x10000)]

    serial = _extract(amd64, kernel, host_modules=hosts)
    parallel = _extract(amd64, kernel, host_modules=hosts, workers=2)
    assert parallel.modules == serial.modules
    assert set(parallel.symbols) == set(serial.symbols)
    assert set(parallel.ranges) == set(serial.ranges)
    assert sorted(parallel.cover_points.trace_pc) == sorted(serial.cover_points.trace_pc)


def test_find_module_objects(tmp_path):
    (tmp_path / "a" / "b").mkdir(parents=True)
    (tmp_path / "a" / "snd-hda-intel.ko").write_bytes(b"")
    (tmp_path / "a" / "b" / "snd-hda-intel.ko").write_bytes(b"")
    (tmp_path / "a" / "b" / "readme.txt").write_bytes(b"")

    found = find_module_objects([str(tmp_path / "a")])
    assert found == {"snd_hda_intel": str(tmp_path / "a" / "snd-hda-intel.ko")}


class _FakeBackend:
    """Another object format plugged into the runner."""

    def __init__(self):
        self.calls = []

    def read_symbols(self, module, info):
        self.calls.append(("read_symbols", module.name))
        info.trace_pc_idx.add(1)
        return [Symbol(name="f", module=module, start=module.addr, end=module.addr + 4)]

    def read_text_data(self, module):
        return b""

    def read_module_cover_points(self, target, module, info):
        self.calls.append(("read_module_cover_points", module.name))
        assert info.trace_pc_idx == {1}
        return CoverPoints(trace_pc=[module.addr + 1])

    def read_text_ranges(self, module):
        self.calls.append(("read_text_ranges", module.name))
        if module.name == "bad":
            raise MissingTextSectionError(module.path)
        unit = CompileUnit(name="f.c", module=module)
        return [PcRange(start=module.addr, end=module.addr + 4, unit=unit)], [unit]

    def get_module_offset(self, is_arm64, is_kernel_61_or_earlier, path):
        return 0x100

    def get_compiler_version(self, path):
        return "fake 1.0"


def test_runner_accepts_any_backend(tmp_path, amd64):
    (tmp_path / "good.ko").write_bytes(b"")
    (tmp_path / "bad.ko").write_bytes(b"")
    backend = _FakeBackend()
    params = DwarfParams(
        target=amd64,
        obj_dir=str(tmp_path),
        host_modules=[HostModule("good", 0x1000), HostModule("bad", 0x2000)],
    )

    impl = make_dwarf(params, backend)
    assert [m.addr for m in impl.modules] == [0, 0x1100]
    assert impl.cover_points.trace_pc == (1, 0x1101)
    assert list(impl.skipped_modules) == ["bad"]
    assert impl.compiler_version == "fake 1.0"
    assert backend.calls[:3] == [
        ("read_symbols", ""),
        ("read_module_cover_points", ""),
        ("read_text_ranges", ""),
    ]


def test_elf_backend_text_data(write_elf):
    kernel = _write_kernel(write_elf)
    assert ElfBackend().read_text_data(Module(path=kernel)) == b"\x90" * 0x1000


def test_make_elf_runs_the_elf_backend(write_elf, amd64):
    kernel = _write_kernel(write_elf)
    _write_module(write_elf, "build/drivers/net/e1000.ko")
    params = _params(amd64, kernel, host_modules=[HostModule("e1000", MODULE_BASE)])
    assert make_elf(params) == make_dwarf(params, ElfBackend())


def test_result_is_frozen(write_elf, amd64):
    kernel = _write_kernel(write_elf)
    b = ElfBuilder()
    b.add_section(".data", data=b"\x00" * 8, flags=SHF_ALLOC)
    write_elf(b, "build/broken.ko")
    impl = _extract(amd64, kernel, host_modules=[HostModule("broken", MODULE_BASE)])

    with pytest.raises(dataclasses.FrozenInstanceError):
        impl.compiler_version = ""
    with pytest.raises(dataclasses.FrozenInstanceError):
        impl.cover_points.trace_pc = ()
    with pytest.raises(TypeError):
        impl.skipped_modules["broken"] = "retry"
    with pytest.raises(AttributeError):
        impl.symbols.append(None)

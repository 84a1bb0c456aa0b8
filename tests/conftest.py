import pytest

from kcover.backend.types import Module
from kcover.targets import AMD64, LINUX, Target

from tests.elf_builder import (
    R_X86_64_PLT32,
    STT_NOTYPE,
    ElfBuilder,
)


@pytest.fixture
def write_elf(tmp_path):
    # writes the builder's object to file_name in the tmp_path directory.
    # returns final path.
    def fn(builder: ElfBuilder, file_name: str = "obj.ko"):
        path = tmp_path / file_name
        path.parent.mkdir(parents=True, exist_ok=True)
        return builder.write(path)

    return fn


@pytest.fixture
def amd64():
    return Target(os=LINUX, arch=AMD64)


@pytest.fixture
def instrumented_module(write_elf):
    """A module with function foo at [0x10, 0x20) calling __sanitizer_cov_trace_pc
    at offset 0x14.
    """
    b = ElfBuilder()
    text = b.add_text(size=0x40)
    b.add_symbol("foo", value=0x10, size=0x10, shndx=text)
    trace_pc = b.add_symbol("__sanitizer_cov_trace_pc", type=STT_NOTYPE)
    b.add_rela(text, [(0x14, trace_pc, R_X86_64_PLT32)])
    path = write_elf(b)
    return Module(path=path, name="foo_mod", addr=0x1000)

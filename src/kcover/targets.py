"""
Per-architecture constants used to locate coverage callback call sites.

The table is built once at import time and exposed read-only.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .exceptions import UnknownArchError

LINUX = "linux"

AMD64 = "amd64"
I386 = "386"
ARM64 = "arm64"
ARM = "arm"
PPC64LE = "ppc64le"
S390X = "s390x"
RISCV64 = "riscv64"
MIPS64LE = "mips64le"


@dataclass(frozen=True)
class Arch:
    # Relocation type the compiler emits for a direct call to an external
    # function.
    call_reloc_type: int
    # Distance between the call instruction and the relocated field.
    rela_offset: int = 0


ARCHES: Mapping[str, Arch] = MappingProxyType(
    {
        # R_X86_64_PLT32, e8 <rel32>
        AMD64: Arch(call_reloc_type=4, rela_offset=1),
        # R_386_PC32, e8 <rel32>
        I386: Arch(call_reloc_type=2, rela_offset=1),
        # R_AARCH64_CALL26
        ARM64: Arch(call_reloc_type=283),
        # R_ARM_CALL
        ARM: Arch(call_reloc_type=28),
        # R_PPC64_REL24
        PPC64LE: Arch(call_reloc_type=10),
        # R_390_PLT32DBL, c0 e5 <rel32>
        S390X: Arch(call_reloc_type=20, rela_offset=2),
        # R_RISCV_CALL_PLT
        RISCV64: Arch(call_reloc_type=19),
        # R_MIPS_26
        MIPS64LE: Arch(call_reloc_type=4),
    }
)


def get_arch(arch: str) -> Arch:
    try:
        return ARCHES[arch]
    except KeyError:
        raise UnknownArchError(arch) from None


@dataclass(frozen=True)
class Target:
    os: str
    arch: str

    @property
    def call_reloc_type(self) -> int:
        return get_arch(self.arch).call_reloc_type

    @property
    def rela_offset(self) -> int:
        return get_arch(self.arch).rela_offset

    @property
    def is_arm64(self) -> bool:
        return self.arch == ARM64


def get_target(os: str, arch: str) -> Target:
    get_arch(arch)
    return Target(os=os, arch=arch)

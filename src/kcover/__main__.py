"""
Extract coverage callback sites, symbols and compile units from a kernel
build and print a summary.

Usage:
    python -m kcover --arch amd64 --vmlinux build/vmlinux \
        --module e1000=0xffffffffa0000000 --module-dir build/drivers
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections import Counter
from typing import List, Sequence

from elftools.common.exceptions import ELFError

from kcover.backend import DwarfParams, HostModule, make_elf
from kcover.exceptions import CoverageError
from kcover.targets import ARCHES, LINUX, get_target

logger = logging.getLogger(__name__)


def _parse_host_module(value: str) -> HostModule:
    name, sep, addr = value.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=ADDR, got {value!r}")
    try:
        return HostModule(name=name, addr=int(addr, 0))
    except ValueError:
        raise argparse.ArgumentTypeError(f"bad module address {addr!r}") from None


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Extract kernel coverage points, symbols and compile units."
    )
    parser.add_argument("--os", default=LINUX)
    parser.add_argument("--arch", required=True, choices=sorted(ARCHES))
    parser.add_argument("--vmlinux", required=True, help="kernel image with DWARF")
    parser.add_argument(
        "--module",
        dest="modules",
        action="append",
        default=[],
        type=_parse_host_module,
        metavar="NAME=ADDR",
        help="loaded module and its base address (repeatable)",
    )
    parser.add_argument(
        "--module-dir",
        dest="module_dirs",
        action="append",
        default=[],
        help="extra directory to search for .ko files (repeatable)",
    )
    parser.add_argument("--kernel-61-or-earlier", action="store_true")
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    params = DwarfParams(
        target=get_target(args.os, args.arch),
        obj_dir=os.path.dirname(os.path.abspath(args.vmlinux)),
        kernel_object=args.vmlinux,
        module_objs=args.module_dirs,
        host_modules=args.modules,
        is_kernel_61_or_earlier=args.kernel_61_or_earlier,
        workers=args.workers,
    )
    try:
        impl = make_elf(params)
    except (CoverageError, OSError, ELFError) as e:
        logger.error(f"coverage extraction failed: {e}")
        return 1

    symbols = Counter(s.module.name for s in impl.symbols)
    units = Counter(u.module.name for u in impl.units)
    for module in impl.modules:
        print(
            f"{module.name or 'kernel':<24} addr={module.addr:#x} "
            f"symbols={symbols[module.name]} units={units[module.name]}"
        )
    for name, reason in sorted(impl.skipped_modules.items()):
        print(f"{name:<24} skipped: {reason}")
    print()
    print("Summary")
    print(f"  Symbols: {len(impl.symbols)}")
    print(f"  Compile units: {len(impl.units)}")
    print(f"  PC ranges: {len(impl.ranges)}")
    print(f"  trace_pc call sites: {len(impl.cover_points.trace_pc)}")
    print(f"  trace_cmp call sites: {len(impl.cover_points.trace_cmp)}")
    compiler = impl.compiler_version.replace("\x00", " ").strip()
    if compiler:
        print(f"  Compiler: {compiler}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

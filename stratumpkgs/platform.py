"""Platform descriptors and the default execution-compatibility policy.

Whether one system can run another's binaries depends on the host, so
seed resolution takes the predicate as a parameter. The default here
compares ISA family, kernel and endianness from a table and lets a
64-bit host run 32-bit code of the same family (x86_64 runs i686,
aarch64 runs armv7l). Nothing in it names specific architecture pairs.
"""

import logging
from dataclasses import dataclass
from typing import Callable, NamedTuple

logger = logging.getLogger(__name__)


class Isa(NamedTuple):
    family: str
    bits: int
    endian: str


ISAS = {
    "x86_64": Isa("x86", 64, "little"),
    "i686": Isa("x86", 32, "little"),
    "i586": Isa("x86", 32, "little"),
    "aarch64": Isa("arm", 64, "little"),
    "armv7l": Isa("arm", 32, "little"),
    "armv6l": Isa("arm", 32, "little"),
    "armv5tel": Isa("arm", 32, "little"),
    "mipsel": Isa("mips", 32, "little"),
    "mips64el": Isa("mips", 64, "little"),
    "powerpc64le": Isa("power", 64, "little"),
    "powerpc64": Isa("power", 64, "big"),
    "riscv64": Isa("riscv", 64, "little"),
    "riscv32": Isa("riscv", 32, "little"),
    "loongarch64": Isa("loongarch", 64, "little"),
    "s390x": Isa("s390", 64, "big"),
}

# (arch, libc) -> dynamic linker file name inside the libc's lib/
DYNAMIC_LINKERS = {
    ("x86_64", "glibc"): "ld-linux-x86-64.so.2",
    ("i686", "glibc"): "ld-linux.so.2",
    ("aarch64", "glibc"): "ld-linux-aarch64.so.1",
    ("armv7l", "glibc"): "ld-linux-armhf.so.3",
    ("armv6l", "glibc"): "ld-linux-armhf.so.3",
    ("armv5tel", "glibc"): "ld-linux.so.3",
    ("mipsel", "glibc"): "ld.so.1",
    ("mips64el", "glibc"): "ld.so.1",
    ("powerpc64le", "glibc"): "ld64.so.2",
    ("riscv64", "glibc"): "ld-linux-riscv64-lp64d.so.1",
    ("x86_64", "musl"): "ld-musl-x86_64.so.1",
    ("aarch64", "musl"): "ld-musl-aarch64.so.1",
    ("armv6l", "musl"): "ld-musl-armhf.so.1",
}


@dataclass(frozen=True)
class PlatformDescriptor:
    arch: str
    kernel: str = "linux"
    libc: str = "glibc"

    @property
    def system(self) -> str:
        return f"{self.arch}-{self.kernel}"

    @property
    def isa(self) -> Isa | None:
        return ISAS.get(self.arch)

    @property
    def config(self) -> str:
        """GNU triple, e.g. ``x86_64-unknown-linux-gnu``."""
        abi = {"glibc": "gnu", "musl": "musl"}.get(self.libc, self.libc)
        return f"{self.arch}-unknown-{self.kernel}-{abi}"

    @classmethod
    def parse(cls, system: str, libc: str = "glibc") -> "PlatformDescriptor":
        """Build from a ``<arch>-<kernel>`` system string."""
        arch, sep, kernel = system.partition("-")
        if not sep or not arch or not kernel:
            raise ValueError(f"invalid system {system!r}, expected '<arch>-<kernel>'")
        return cls(arch, kernel, libc)

    def __str__(self) -> str:
        return f"{self.system}/{self.libc}"


CanExecute = Callable[[PlatformDescriptor, PlatformDescriptor], bool]


def can_execute(host: PlatformDescriptor, target: PlatformDescriptor) -> bool:
    """Default policy: can ``host`` run binaries built for ``target``?"""
    if host.kernel != target.kernel or host.libc != target.libc:
        return False
    if host.arch == target.arch:
        return True
    h, t = host.isa, target.isa
    if h is None or t is None:
        return False
    return h.family == t.family and h.endian == t.endian and t.bits <= h.bits


def dynamic_linker(platform: PlatformDescriptor) -> str:
    """Dynamic linker name for ``platform``, or a glob guess when unknown."""
    name = DYNAMIC_LINKERS.get((platform.arch, platform.libc))
    if name is None:
        logger.warning(
            "don't know the name of the dynamic linker for platform '%s', so guessing instead",
            platform.config,
        )
        return "ld*.so.?"
    return name

"""Seed bundles: the pre-built binaries everything else is bootstrapped from.

A bundle is a static busybox plus a tarball of bootstrap tools (compiler,
binutils, coreutils, a shell and the libc they were linked against).
The table is keyed ``libc -> system -> bundle``. Resolution tries the
exact system first, then every other system of the same libc family in
sorted order, taking the first one the host can execute.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from stratumpkgs.component import SEED_STAGE, ComponentRef, Origin, derive
from stratumpkgs.errors import UnsupportedPlatform
from stratumpkgs.fetchurl import fetchurl
from stratumpkgs.platform import CanExecute, PlatformDescriptor, can_execute
from stratumpkgs.scripts import UNPACK_BOOTSTRAP_TOOLS_SH

logger = logging.getLogger(__name__)

TARBALLS_BASE = "http://tarballs.nixos.org/stdenv"

SEED_KEYS = ("busybox", "bootstrap-tools-tarball", "bootstrap-tools")


@dataclass(frozen=True)
class SeedBundle:
    """Fetchable description of one seed bundle."""

    system: str
    libc: str
    busybox_url: str
    busybox_sha256: str
    tarball_url: str
    tarball_sha256: str

    @property
    def platform(self) -> PlatformDescriptor:
        return PlatformDescriptor.parse(self.system, self.libc)

    @classmethod
    def from_dict(cls, system: str, libc: str, data: Mapping[str, str]) -> "SeedBundle":
        try:
            return cls(
                system=system,
                libc=libc,
                busybox_url=data["busybox"]["url"],
                busybox_sha256=data["busybox"]["sha256"],
                tarball_url=data["bootstrapTools"]["url"],
                tarball_sha256=data["bootstrapTools"]["sha256"],
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed seed bundle entry for {system}/{libc}: {e}") from e


SeedTable = Mapping[str, Mapping[str, SeedBundle]]

_X86_64_GLIBC = f"{TARBALLS_BASE}/x86_64-unknown-linux-gnu/82b583ba2ba2e5706b35dbe23f31362e62be2a9d"

DEFAULT_SEED_TABLE: SeedTable = MappingProxyType({
    "glibc": MappingProxyType({
        "x86_64-linux": SeedBundle(
            system="x86_64-linux",
            libc="glibc",
            busybox_url=f"{_X86_64_GLIBC}/busybox",
            busybox_sha256="42b4c49d04c133563fa95f6876af22ad9910483f6e38c6ecd90e4d802bca08d4",
            tarball_url=f"{_X86_64_GLIBC}/bootstrap-tools.tar.xz",
            tarball_sha256="61096bd3cf073e8556054da3a4f86920cc8eca81036580f0d72eb448619b50cd",
        ),
    }),
})


def load_seed_table(path: str | Path, base: SeedTable = DEFAULT_SEED_TABLE) -> SeedTable:
    """Read extra bundles from JSON and layer them over ``base``.

    Format: ``{"<libc>": {"<system>": {"busybox": {"url", "sha256"},
    "bootstrapTools": {"url", "sha256"}}}}``.
    """
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"malformed seed table {path}: expected an object of libc families")
    table = {libc: dict(systems) for libc, systems in base.items()}
    for libc, systems in data.items():
        if not isinstance(systems, dict):
            raise ValueError(f"malformed seed table {path}: {libc!r} must map systems to bundles")
        for system, entry in systems.items():
            table.setdefault(libc, {})[system] = SeedBundle.from_dict(system, libc, entry)
    logger.debug("loaded seed table from %s: %s", path,
                 {libc: sorted(s) for libc, s in table.items()})
    return MappingProxyType({libc: MappingProxyType(s) for libc, s in table.items()})


def resolve_seed_bundle(platform: PlatformDescriptor, table: SeedTable = DEFAULT_SEED_TABLE,
                        predicate: CanExecute = can_execute) -> SeedBundle:
    """Pick the seed bundle for ``platform``.

    Raises:
        UnsupportedPlatform: the libc family is unknown, or no bundle of
            that family is executable on ``platform``.
    """
    by_system = table.get(platform.libc)
    if by_system is None:
        raise UnsupportedPlatform(platform, f"unsupported libc {platform.libc!r}")

    exact = by_system.get(platform.system)
    if exact is not None:
        return exact

    for system in sorted(by_system):
        candidate = by_system[system]
        if predicate(platform, candidate.platform):
            logger.info("no seed bundle for %s, using compatible %s", platform, system)
            return candidate
    raise UnsupportedPlatform(platform, f"none of {sorted(by_system)} is executable")


def seed_components(bundle: SeedBundle) -> dict[str, ComponentRef]:
    """The three seed derivations: busybox, the tarball, and its unpacked tree."""
    origin = Origin(SEED_STAGE, "seed")
    busybox = fetchurl(
        "busybox", bundle.busybox_url, bundle.busybox_sha256,
        recursive=True, executable=True, origin=origin,
    )
    tarball = fetchurl(
        "bootstrap-tools.tar.xz", bundle.tarball_url, bundle.tarball_sha256,
        component="bootstrap-tools-tarball", origin=origin,
    )
    bootstrap_tools = derive(
        "bootstrap-tools", "bootstrap-tools", busybox.out,
        origin=origin,
        system=bundle.system,
        args=["ash", "-e", UNPACK_BOOTSTRAP_TOOLS_SH],
        inputs=[busybox, tarball],
        srcs=[UNPACK_BOOTSTRAP_TOOLS_SH],
        env={
            "hardeningUnsupportedFlags": (
                "fortify3 shadowstack pacret stackclashprotection "
                "trivialautovarinit zerocallusedregs"
            ),
            "isGNU": "1",
            "langC": "1",
            "langCC": "1",
            "tarball": tarball.out,
        },
    )
    return {
        "busybox": busybox,
        "bootstrap-tools-tarball": tarball,
        "bootstrap-tools": bootstrap_tools,
    }


"""The recipe catalog: what each component needs, not how it is built.

Recipes are deliberately thin. Actual build scripts belong to the build
engine; a recipe only records what the staging algorithm must know:

- ``runtime``: role specs that stay referenced by the outputs
  (``"role"`` = its out, ``"role.dev"``, ``"role.*"`` = every output)
- ``build``: roles needed only while building
- ``optional``: roles switched on by a truthy attribute
- ``heavy``: roles dropped whenever ``inBootstrap`` is set
- ``bind``: the default component key for a role, when it differs
  from the role name (``"libc"`` always resolves to the platform's libc)

Builders other than ``generic`` are the bootstrap's own special
derivations (placeholder libc, wrappers, linker re-homing, reference
pruning).
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from stratumpkgs.fetchurl import Source
from stratumpkgs.policy import parse_role

GENERIC = "generic"
LIBC = "libc"


@dataclass(frozen=True)
class Recipe:
    pname: str
    version: str = ""
    builder: str = GENERIC
    runtime: tuple[str, ...] = ()
    build: tuple[str, ...] = ()
    optional: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    heavy: tuple[str, ...] = ()
    defaults: Mapping[str, Any] = field(default_factory=dict)
    outputs: tuple[str, ...] = ("out",)
    links_libc: bool = True
    needs_cc: bool = True
    bind: Mapping[str, str] = field(default_factory=dict)
    src: Source | None = None

    def attrs(self, overrides: Mapping[str, Any]) -> dict[str, Any]:
        return {**self.defaults, **overrides}

    def runtime_specs(self, attrs: Mapping[str, Any]) -> list[str]:
        """Enabled runtime role specs under ``attrs``."""
        specs = list(self.runtime)
        for attr, roles in sorted(self.optional.items()):
            if attrs.get(attr):
                specs.extend(roles)
        if attrs.get("inBootstrap"):
            specs = [s for s in specs if parse_role(s)[0] not in self.heavy]
        return specs

    def input_roles(self, attrs: Mapping[str, Any]) -> list[str]:
        """Every role this recipe needs under ``attrs``, in declaration order."""
        roles = [parse_role(s)[0] for s in self.runtime_specs(attrs)]
        roles.extend(self.build)
        return list(dict.fromkeys(roles))

    def default_key(self, role: str, libc: str) -> str:
        if role == LIBC:
            return libc
        return self.bind.get(role, role)


_SRC = {
    "zlib": Source(
        "zlib-1.3.1.tar.gz",
        "https://github.com/madler/zlib/releases/download/v1.3.1/zlib-1.3.1.tar.gz",
        "9a93b2b7dfdac77ceba5a558a580e74667dd6fede4585b91eefb60f03b72df23",
    ),
    "gnum4": Source(
        "m4-1.4.20.tar.bz2",
        "https://ftpmirror.gnu.org/m4/m4-1.4.20.tar.bz2",
        "ac6989ee5d2aed81739780630cc2ce097e2a6546feb96a4a54db37d46a1452e4",
    ),
    "gettext": Source(
        "gettext-0.25.1.tar.gz",
        "https://ftpmirror.gnu.org/gettext/gettext-0.25.1.tar.gz",
        "746f955d42d71eb69ce763869cb92682f09a4066528d018b6ca7a3f48089a085",
    ),
    "texinfo": Source(
        "texinfo-7.2.tar.xz",
        "https://ftpmirror.gnu.org/texinfo/texinfo-7.2.tar.xz",
        "0329d7788fbef113fa82cb80889ca197a344ce0df7646fe000974c5d714363a6",
    ),
    "gmp": Source(
        "gmp-6.3.0.tar.bz2",
        "https://ftpmirror.gnu.org/gmp/gmp-6.3.0.tar.bz2",
        "ac28211a7cfb609bae2e2c8d6058d66c8fe96434f740cf6fe2e47b000d1c20cb",
    ),
    "mpfr": Source(
        "mpfr-4.2.2.tar.xz",
        "https://www.mpfr.org/mpfr-4.2.2/mpfr-4.2.2.tar.xz",
        "b67ba0383ef7e8a8563734e2e889ef5ec3c3b898a01d00fa0a6869ad81c6ce01",
    ),
    "bash": Source(
        "bash-5.3.tar.gz",
        "https://ftpmirror.gnu.org/bash/bash-5.3.tar.gz",
        "0d5cd86965f869a26cf64f4b71be7b96f90a3ba8b3d74e27e8e9d9d5550f31ba",
    ),
    "patchelf": Source(
        "patchelf-0.15.2.tar.bz2",
        "https://github.com/NixOS/patchelf/releases/download/0.15.2/patchelf-0.15.2.tar.bz2",
        "17745f564159c8e228fc412da65a2048b846c4b6b4220b77cbf22416e02f2d7c",
        "sha256",
    ),
    "bison": Source(
        "bison-3.8.2.tar.gz",
        "https://ftpmirror.gnu.org/bison/bison-3.8.2.tar.gz",
        "06c9e13bdf7eb24d4ceb6b59205a4f67c2c7e7213119644430fe82fbd14a0abb",
        "sha256",
    ),
    "perl": Source(
        "perl-5.40.0.tar.gz",
        "https://cpan.metacpan.org/src/5.0/perl-5.40.0.tar.gz",
        "c740348f357396327a9795d3e8323bafd0fe8a5c7835fc1cbaba0cc8dfe7161f",
        "sha256",
    ),
    "libmpc": Source(
        "mpc-1.3.1.tar.gz",
        "https://ftpmirror.gnu.org/mpc/mpc-1.3.1.tar.gz",
        "ab642492f5cf882b74aa0cb730cd410a81edcdbec895183ce930e706c1c759b8",
        "sha256",
    ),
    "gcc-unwrapped": Source(
        "gcc-14.3.0.tar.xz",
        "https://mirror.koddos.net/gcc/releases/gcc-14.3.0/gcc-14.3.0.tar.xz",
        "e0dc77297625631ac8e50fa92fffefe899a4eb702592da5c32ef04e2293aca3a",
        "sha256",
    ),
    "isl": Source(
        "isl-0.20.tar.xz",
        "https://downloads.sourceforge.net/libisl/isl-0.20.tar.xz",
        "1akpgq0rbqbah5517blg2zlnfvjxfcl9cjrfc75nbcx5p2gnlnd5",
        "nix32",
    ),
}

DEFAULT_RECIPES: Mapping[str, Recipe] = MappingProxyType({
    # toolchain pieces
    "binutils-unwrapped": Recipe("binutils", "2.44", defaults={"enableGold": True}),
    "gcc-unwrapped": Recipe(
        "gcc", "14.3.0",
        runtime=("gmp", "mpfr", "libmpc", "isl", "zlib"),
        build=("texinfo", "gettext", "perl"),
        outputs=("out", "lib"),
        defaults={"reproducibleBuild": False, "profiledCompiler": True,
                  "langC": True, "langCC": True},
        src=_SRC["gcc-unwrapped"],
    ),
    "glibc": Recipe(
        "glibc", "2.40-66",
        runtime=("libidn2", "linux-headers"),
        build=("bison", "perl"),
        outputs=("out", "dev", "bin"),
        links_libc=False,
    ),
    "musl": Recipe(
        "musl", "1.2.5", runtime=("linux-headers",), outputs=("out", "dev"), links_libc=False,
    ),
    "linux-headers": Recipe("linux-headers", "6.14.7", build=("perl",), links_libc=False),
    "expand-response-params": Recipe("expand-response-params"),
    # stage1/2 helpers
    "perl": Recipe(
        "perl", "5.40.0",
        defaults={"enableThreading": True, "enableCrypt": True},
        src=_SRC["perl"],
    ),
    "gnum4": Recipe("gnum4", "1.4.20", src=_SRC["gnum4"]),
    "bison": Recipe("bison", "3.8.2", build=("gnum4", "perl"), src=_SRC["bison"]),
    "dejagnu": Recipe("dejagnu", "1.6.3", defaults={"doCheck": True}),
    "libunistring": Recipe("libunistring", "1.3"),
    "libidn2": Recipe("libidn2", "2.3.8", runtime=("libunistring",), outputs=("bin", "dev", "out")),
    "patchelf": Recipe("patchelf", "0.15.2", src=_SRC["patchelf"]),
    "nuke-references": Recipe("nuke-references", runtime=("perl",), links_libc=False, needs_cc=False),
    # config.guess/config.sub, copied in; no compiler involved
    "gnu-config": Recipe(
        "gnu-config", "2024-01-01",
        defaults={"dontBuild": True, "dontConfigure": True,
                  "dontUpdateAutotoolsGnuConfigScripts": True},
        links_libc=False, needs_cc=False,
    ),
    "update-autotools-gnu-config-scripts-hook": Recipe(
        "update-autotools-gnu-config-scripts-hook",
        runtime=("gnu-config",),
        links_libc=False, needs_cc=False,
    ),
    # stage3 compiler libraries
    "gmp": Recipe("gmp", "6.3.0", build=("gnum4",), outputs=("out", "dev"), src=_SRC["gmp"]),
    "mpfr": Recipe("mpfr", "4.2.2", runtime=("gmp",), outputs=("out", "dev"), src=_SRC["mpfr"]),
    "libmpc": Recipe("libmpc", "1.3.1", runtime=("gmp", "mpfr"), src=_SRC["libmpc"]),
    "isl": Recipe("isl", "0.20", runtime=("gmp",), src=_SRC["isl"]),
    "zlib": Recipe("zlib", "1.3.1", outputs=("out", "dev"), src=_SRC["zlib"]),
    "texinfo": Recipe("texinfo", "7.2", runtime=("perl",), src=_SRC["texinfo"]),
    "gettext": Recipe("gettext", "0.25.1", src=_SRC["gettext"]),
    # common path
    "bash": Recipe("bash", "5.3p3", build=("bison",), src=_SRC["bash"]),
    "coreutils": Recipe("coreutils", "9.7", runtime=("acl", "attr", "gmp")),
    "attr": Recipe("attr", "2.5.2"),
    "acl": Recipe("acl", "2.3.2", runtime=("attr",)),
    "pcre": Recipe("pcre", "8.45"),
    "gnugrep": Recipe("gnugrep", "3.11", runtime=("pcre",)),
    "gnused": Recipe("gnused", "4.9"),
    "gawk": Recipe("gawk", "5.3.2"),
    "gnutar": Recipe("gnutar", "1.35", runtime=("acl",)),
    "gzip": Recipe("gzip", "1.14"),
    "bzip2": Recipe("bzip2", "1.0.8", outputs=("bin", "out")),
    "xz": Recipe("xz", "5.8.1", outputs=("bin", "out")),
    "diffutils": Recipe("diffutils", "3.12"),
    "findutils": Recipe("findutils", "4.10.0"),
    "gnupatch": Recipe("patch", "2.8"),
    "ed": Recipe("ed", "1.21.1"),
    "file": Recipe("file", "5.46", runtime=("zlib",)),
    "gnumake": Recipe(
        "gnumake", "4.4.1",
        optional={"guileSupport": ("guile",)},
        heavy=("guile",),
        defaults={"inBootstrap": False, "guileSupport": False},
    ),
    "guile": Recipe("guile", "3.0.10"),
    # bootstrap-only derivations
    "libc-placeholder": Recipe(
        "libc-placeholder", builder="libc-placeholder",
        runtime=("seed",), links_libc=False, needs_cc=False,
        bind={"seed": "bootstrap-tools"},
    ),
    "bintools-wrapper": Recipe(
        "binutils-wrapper", builder="bintools-wrapper",
        runtime=("bintools", "libc", "coreutils", "gnugrep"),
        links_libc=False, needs_cc=False,
        bind={"bintools": "binutils-unwrapped"},
    ),
    "cc-wrapper": Recipe(
        "gcc-wrapper", builder="cc-wrapper",
        runtime=("cc.*", "bintools", "libc.*", "coreutils", "gnugrep",
                 "expand-response-params"),
        links_libc=False, needs_cc=False,
        bind={"cc": "gcc-unwrapped", "bintools": "binutils"},
    ),
    "rehome-bintools": Recipe(
        "binutils", builder="rehome-bintools",
        runtime=("bintools.*", "libc"),
        build=("patchelf",),
        links_libc=False, needs_cc=False,
        bind={"bintools": "binutils-unwrapped"},
    ),
    "prune-references": Recipe(
        "prune-references", builder="prune-references",
        runtime=("source.*",),
        build=("patchelf", "nuke-references"),
        links_libc=False, needs_cc=False,
    ),
})

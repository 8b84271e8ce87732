"""The documented override sets for stages 0 through 5.

Like the stage list in nixpkgs/pkgs/stdenv/linux/default.nix. ``L`` below
is the platform's libc key (``glibc`` or ``musl``).

    stage0  placeholder L (symlinks into the seed), a bintools wrapper
            over the seed; the seed's gcc/coreutils/gnugrep are threaded
            through. No compiler yet.
    stage1  binutils without gold, perl without threads or crypt, m4, bison.
    stage2  the real L, with libidn2/libunistring nuked of the placeholder;
            the stage1 linker re-homed onto the new L and re-wrapped.
    stage3  gcc against static gmp/mpfr/libmpc/isl (``*-stage3``).
    stage4  everything the final stdenv keeps, rebuilt with stage3's gcc,
            and the final ``gcc`` wrapper.
    stage5  the final stdenv; only libidn2 (pruned) and gnumake change.

Off x86, and on musl, stages 3 to 5 also build with the hook that
refreshes config.guess/config.sub in tarballs (stage 2 too on RISC-V).
A stage takes its native inputs from the one before, so the stage before
each user rebuilds the hook.
"""

from typing import Mapping

from stratumpkgs.bootstrap.generator import StagePlan
from stratumpkgs.platform import PlatformDescriptor
from stratumpkgs.policy import (
    REBUILD,
    STDENV,
    Alias,
    Descriptor,
    Inherit,
    NukeReferences,
    Override,
    OverridePolicy,
    Prev,
    Ref,
    rebuild,
)
from stratumpkgs.seeds import SEED_KEYS

SEED = "bootstrap-tools"
GNU_CONFIG = "gnu-config"
GNU_CONFIG_HOOK = "update-autotools-gnu-config-scripts-hook"

BINTOOLS_WRAPPER = OverridePolicy("rewrap", recipe="bintools-wrapper")

# static compiler libraries and the ones each links against
STAGE3_LIBS = {
    "gmp": (),
    "mpfr": ("gmp",),
    "libmpc": ("gmp", "mpfr"),
    "isl": ("gmp",),
}

COMMON_PATH = (
    "coreutils", "findutils", "diffutils", "gnused", "gnugrep", "gawk",
    "gnutar", "gzip", "bzip2", "gnumake", "bash", "gnupatch", "xz",
)

STAGE4_REBUILDS = (
    "coreutils", "findutils", "diffutils", "gnused", "gnugrep", "gawk",
    "gnutar", "gzip", "bzip2", "xz", "gnupatch", "bash", "patchelf",
    "ed", "file", "attr", "acl", "pcre",
)


def gnu_config_hook_from(platform: PlatformDescriptor) -> int | None:
    """First stage that builds with fresh config.guess/config.sub, if any.

    The copies shipped in older tarballs don't recognize aarch64, RISC-V
    or musl.
    """
    isa = platform.isa
    if isa is not None and isa.family == "riscv":
        return 2
    if isa is None or isa.family != "x86" or platform.libc == "musl":
        return 3
    return None


def _hook_overrides(platform: PlatformDescriptor, index: int) -> dict[str, Descriptor]:
    first = gnu_config_hook_from(platform)
    if first is None or not first - 1 <= index <= 4:
        return {}
    return {GNU_CONFIG: rebuild(), GNU_CONFIG_HOOK: rebuild()}


def _hook_inputs(platform: PlatformDescriptor, index: int) -> tuple[str, ...]:
    first = gnu_config_hook_from(platform)
    return (GNU_CONFIG_HOOK,) if first is not None and index >= first else ()


def allowed_keys(platform: PlatformDescriptor) -> tuple[str, ...]:
    """Keys the final stdenv may reference, like its allowedRequisites."""
    keys = (
        "gzip", "bzip2", "xz", "bash", "binutils-unwrapped", "coreutils",
        "diffutils", "findutils", "gawk", "gmp", "gnumake", "gnused", "gnutar",
        "gnugrep", "gnupatch", "patchelf", "ed", "file", "attr", "acl", "zlib",
        "pcre", "libidn2", "libunistring", platform.libc, "linux-headers", "binutils",
        "gcc", "gcc-unwrapped", "expand-response-params",
    )
    if _hook_inputs(platform, 5):
        keys += (GNU_CONFIG_HOOK, GNU_CONFIG)
    return keys


def stage0(platform: PlatformDescriptor) -> StagePlan:
    return StagePlan(0, "bootstrap-stage0", {
        "cc-wrapper-stdenv": Alias(STDENV),
        platform.libc: Override(OverridePolicy("placeholder", recipe="libc-placeholder")),
        "gcc-unwrapped": Inherit(SEED),
        "coreutils": Inherit(SEED),
        "gnugrep": Inherit(SEED),
        "binutils": Override(OverridePolicy("bootstrap-wrapper", recipe="bintools-wrapper"),
                             {"bintools": Ref(SEED)}),
    })


def stage1(platform: PlatformDescriptor) -> StagePlan:
    return StagePlan(1, "bootstrap-stage1", {
        "binutils-unwrapped": rebuild(OverridePolicy("no-gold", {"enableGold": False})),
        "binutils": rebuild(BINTOOLS_WRAPPER),
        "perl": rebuild(OverridePolicy(
            "disable-threading", {"enableThreading": False, "enableCrypt": False})),
        "gnum4": rebuild(),
        "bison": rebuild(),
        **_hook_overrides(platform, 1),
    })


def stage2(platform: PlatformDescriptor) -> StagePlan:
    return StagePlan(2, "bootstrap-stage2", {
        "dejagnu": rebuild(OverridePolicy("skip-checks", {"doCheck": False})),
        # Both are built before the real libc, so they still point at the
        # placeholder; glibc loads them at runtime.
        "libunistring": rebuild(OverridePolicy(
            "nuke-refs", {"am_cv_func_iconv_works": "yes"}, fixups=(NukeReferences(),))),
        "libidn2": rebuild(OverridePolicy(
            "nuke-refs", fixups=(NukeReferences(keep=("libunistring",)),))),
        "nuke-references": rebuild(),
        "linux-headers": rebuild(),
        platform.libc: rebuild(),
        "patchelf": rebuild(),
        "binutils-unwrapped": rebuild(
            OverridePolicy("rehome-linker", recipe="rehome-bintools"),
            bintools=Prev("binutils-unwrapped")),
        "binutils": rebuild(BINTOOLS_WRAPPER.extend("rewrap-libc")),
        **_hook_overrides(platform, 2),
    }, extra_native_build_inputs=_hook_inputs(platform, 2))


def stage3(platform: PlatformDescriptor) -> StagePlan:
    overrides: dict[str, Descriptor] = {}
    static_inputs = {lib: Ref(f"{lib}-stage3") for lib in STAGE3_LIBS}
    for lib, deps in STAGE3_LIBS.items():
        overrides[f"{lib}-stage3"] = Override(
            OverridePolicy("static", recipe=lib, static=True, tag="stage3"),
            {dep: static_inputs[dep] for dep in deps},
        )
    overrides.update({
        "zlib": rebuild(),
        "texinfo": rebuild(),
        "gettext": rebuild(),
        # stage4 unpacks with it
        "xz": rebuild(),
        "gcc-unwrapped": Override(
            OverridePolicy("static-libraries",
                           {"reproducibleBuild": True, "profiledCompiler": False}),
            static_inputs,
        ),
        **_hook_overrides(platform, 3),
    })
    return StagePlan(3, "bootstrap-stage3", overrides,
                     extra_native_build_inputs=("patchelf", *_hook_inputs(platform, 3)))


def stage4(platform: PlatformDescriptor) -> StagePlan:
    overrides: dict[str, Descriptor] = {
        "binutils-unwrapped": rebuild(),
        "binutils": rebuild(BINTOOLS_WRAPPER.extend("own-shell"), shell=Ref("bash")),
        "gmp": rebuild(OverridePolicy("dynamic", tag="stage4")),
        "gnumake": rebuild(OverridePolicy("in-bootstrap", {"inBootstrap": True})),
        "expand-response-params": rebuild(),
        "gcc": rebuild(OverridePolicy("final-wrapper", recipe="cc-wrapper"),
                       cc=Prev("gcc-unwrapped"), shell=Ref("bash")),
    }
    for key in STAGE4_REBUILDS:
        overrides[key] = Override(REBUILD)
    overrides.update(_hook_overrides(platform, 4))
    return StagePlan(4, "bootstrap-stage4", overrides,
                     extra_native_build_inputs=("patchelf", "xz", *_hook_inputs(platform, 4)))


def stage5(platform: PlatformDescriptor) -> StagePlan:
    prune = OverridePolicy(
        "no-bootstrap-reference",
        recipe="prune-references",
        fixups=(NukeReferences(outputs=("bin", "dev", "out"),
                               keep=("source.out", "libunistring")),),
    )
    return StagePlan(
        5, "final",
        {
            "libidn2": rebuild(prune, source=Prev("libidn2")),
            "gnumake": rebuild(OverridePolicy("out-of-bootstrap", {"inBootstrap": False})),
        },
        prewrapped_cc="gcc",
        shell="bash",
        initial_path=COMMON_PATH,
        extra_native_build_inputs=("patchelf", *_hook_inputs(platform, 5)),
        terminal=True,
        allowed=allowed_keys(platform),
        disallowed=SEED_KEYS,
        exports=("libidn2", "gnumake"),
    )


STAGES = (stage0, stage1, stage2, stage3, stage4, stage5)


def layer_user_overrides(plans: list[StagePlan],
                         user_overrides: Mapping[int, Mapping[str, Descriptor]] | None,
                         ) -> list[StagePlan]:
    """``plans`` with each stage's ``user_overrides`` merged on top.

    Raises:
        ValueError: ``user_overrides`` names a stage that is not in ``plans``.
    """
    user_overrides = user_overrides or {}
    unknown = sorted(set(user_overrides) - {p.index for p in plans})
    if unknown:
        raise ValueError(f"no stage(s) {unknown} to override")
    return [
        p.with_overrides(user_overrides[p.index]) if p.index in user_overrides else p
        for p in plans
    ]


def default_plans(platform: PlatformDescriptor,
                  user_overrides: Mapping[int, Mapping[str, Descriptor]] | None = None,
                  ) -> list[StagePlan]:
    """The six stage plans for ``platform``, with ``user_overrides`` layered on.

    Raises:
        ValueError: ``user_overrides`` names a stage that does not exist.
    """
    return layer_user_overrides([make(platform) for make in STAGES], user_overrides)

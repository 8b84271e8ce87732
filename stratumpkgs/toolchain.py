"""Toolchain specifications and the stdenv that exposes them.

A :class:`ToolchainSpec` is what a stage hands to its builds: the shell
the builders run under, the tools on PATH, and (from stage1 on) a
compiler wrapper bound to one libc and one set of binutils. The stage's
stdenv derivation is the same information in store form.

Like nixpkgs/pkgs/stdenv/linux/default.nix, where every stage's stdenv
is ``stdenvLinux`` instantiated with the previous stage's packages.
"""

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

from stratumpkgs.component import ComponentRef, Origin, OutputRef, derive
from stratumpkgs.errors import BootstrapError, SearchPathConflict
from stratumpkgs.mk_derivation import mk_derivation
from stratumpkgs.platform import PlatformDescriptor
from stratumpkgs.scripts import STDENV_BUILDER_SH, STDENV_SCRIPTS, SETUP_SH
from stratumpkgs.wrapper import WrapperPolicy, wrap_compiler

if TYPE_CHECKING:
    from stratumpkgs.bootstrap.generator import Stage, StagePlan

logger = logging.getLogger(__name__)

STAGE0_PREHOOK = """\
# Don't patch #!/interpreter because it leads to retained
# dependencies on the bootstrapTools in the final stdenv.
dontPatchShebangs=1
export NIX_ENFORCE_PURITY="${NIX_ENFORCE_PURITY-1}"
export NIX_ENFORCE_NO_NATIVE="${NIX_ENFORCE_NO_NATIVE-1}"
"""

COMMON_PREHOOK = """\
export NIX_ENFORCE_PURITY="${NIX_ENFORCE_PURITY-1}"
export NIX_ENFORCE_NO_NATIVE="${NIX_ENFORCE_NO_NATIVE-1}"
"""


def pre_hook(platform: PlatformDescriptor, terminal: bool) -> str:
    """The stdenv preHook: shebang patching stays off until the last stage."""
    if not terminal:
        return STAGE0_PREHOOK
    hook = COMMON_PREHOOK
    if platform.arch == "x86_64":
        hook += "NIX_LIB64_IN_SELF_RPATH=1\n"
    return hook


@dataclass(frozen=True)
class ToolchainSpec:
    """The tools one stage builds with.

    ``compiler`` is the raw compiler, ``cc`` its wrapper; both are None
    in stage0, which can only run the seed's own binaries. ``native`` is
    False only for a toolchain whose target differs from its host.
    The requisite sets and ``exports`` are filled for the terminal stage.
    """

    name: str
    platform: PlatformDescriptor
    stage: int
    shell: ComponentRef
    initial_path: tuple[ComponentRef, ...] = ()
    compiler: ComponentRef | None = None
    cc: ComponentRef | None = None
    bintools: ComponentRef | None = None
    libc: ComponentRef | None = None
    coreutils: ComponentRef | None = None
    gnugrep: ComponentRef | None = None
    stdenv: ComponentRef | None = None
    native: bool = True
    extra_native: tuple[ComponentRef, ...] = ()
    allowed_requisites: frozenset[ComponentRef] | None = None
    disallowed_requisites: frozenset[ComponentRef] = frozenset()
    exports: Mapping[str, ComponentRef] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def can_compile(self) -> bool:
        return self.cc is not None

    @property
    def builder(self) -> str:
        return f"{self.shell}/bin/bash"

    @property
    def shim(self):
        """The wrapped compiler's argument rewriter, if there is one."""
        return self.cc.passthru.get("shim") if self.cc is not None else None

    def components(self) -> tuple[ComponentRef, ...]:
        """Every component of the toolchain proper, first occurrence kept."""
        refs = [self.compiler, self.cc, self.bintools, self.libc, self.coreutils,
                self.gnugrep, self.shell, *self.initial_path, *self.extra_native, self.stdenv]
        return tuple(dict.fromkeys(r for r in refs if r is not None))

    def roots(self) -> tuple[ComponentRef, ...]:
        """Components plus exported packages: what the final closure starts from."""
        return tuple(dict.fromkeys((*self.components(), *self.exports.values())))


def can_build_wrapper(toolchain: ToolchainSpec, compiler: ComponentRef | None) -> bool:
    """A wrapper needs a real compiler and the minimal tools its scripts run."""
    if compiler is None:
        return False
    return all(t is not None for t in (toolchain.shell, toolchain.coreutils, toolchain.gnugrep))


def bind_toolchain(
    base: ToolchainSpec,
    compiler: ComponentRef | None,
    bintools: ComponentRef | None,
    libc: ComponentRef | None,
    *,
    env: ComponentRef | None,
    expand_response_params: ComponentRef | None = None,
    policy: WrapperPolicy = WrapperPolicy(),
) -> ToolchainSpec:
    """Bind a raw compiler to ``libc`` and ``bintools`` through a wrapper.

    ``env`` is the stdenv the wrapper derivation is built in. Without a
    compiler there is nothing to wrap and ``base`` comes back with only
    bintools and libc set.

    Raises:
        BootstrapError: a compiler is given but the environment cannot
            build a wrapper for it.
        SearchPathConflict: ``libc`` and ``compiler`` share a prefix, so
            the wrapper could not tell their search paths apart.
    """
    if compiler is None:
        logger.debug("%s: no compiler yet, leaving toolchain unwrapped", base.name)
        return replace(base, bintools=bintools, libc=libc)
    missing = [n for n, v in (("bintools", bintools), ("libc", libc), ("stdenv", env)) if v is None]
    if not can_build_wrapper(base, compiler) or missing:
        raise BootstrapError(
            f"{base.name}: cannot wrap {compiler.name}: missing "
            + ", ".join(missing or ["coreutils/gnugrep"])
        )
    if libc.out == compiler.out:
        raise SearchPathConflict(
            f"{base.name}: libc {libc.name} and compiler {compiler.name} share {libc.out}"
        )

    cc = wrap_compiler(
        "cc",
        f"{base.name}-gcc-wrapper",
        compiler=compiler,
        bintools=bintools,
        libc=libc,
        coreutils=base.coreutils,
        gnugrep=base.gnugrep,
        shell=base.shell,
        stdenv=env,
        platform=base.platform,
        origin=Origin(base.stage, "wrapper"),
        expand_response_params=expand_response_params,
        native=base.native,
        policy=policy,
    )
    logger.debug("%s: wrapped %s against %s", base.name, compiler.name, libc.name)
    return replace(base, compiler=compiler, cc=cc, bintools=bintools, libc=libc)


def make_stdenv(name: str, toolchain: ToolchainSpec, *, terminal: bool = False) -> ComponentRef:
    """Create the stdenv derivation for ``toolchain``.

    Like nixpkgs/pkgs/stdenv/generic: the stdenv provides the build
    environment (compiler, shell, setup hooks) for everything built next.
    """
    native = [*toolchain.extra_native, *([toolchain.cc] if toolchain.cc is not None else [])]
    deps = [toolchain.shell, *toolchain.initial_path, *native]
    refs = tuple(dict.fromkeys(OutputRef(d, "out") for d in deps))
    return derive(
        "stdenv", name, toolchain.builder,
        origin=Origin(toolchain.stage, "stdenv"),
        system=toolchain.platform.system,
        args=["-e", STDENV_BUILDER_SH],
        inputs=deps,
        srcs=STDENV_SCRIPTS,
        env={
            "defaultBuildInputs": "",
            "defaultNativeBuildInputs": " ".join(d.out for d in native),
            "disallowedRequisites": " ".join(
                sorted(d.out for d in toolchain.disallowed_requisites)),
            "initialPath": " ".join(d.out for d in toolchain.initial_path),
            "preHook": pre_hook(toolchain.platform, terminal),
            "setup": SETUP_SH,
            "shell": toolchain.builder,
        },
        references={"out": refs},
        passthru={"cc": toolchain.cc},
    )


def libc_placeholder(
    component: str,
    *,
    seed: ComponentRef,
    toolchain: ToolchainSpec,
    origin: Origin,
) -> ComponentRef:
    """A libc that is only symlinks into the seed's lib and include dirs.

    Lets the first wrapper be built before any real libc exists.
    """
    platform = toolchain.platform
    include = "include-glibc" if platform.libc == "glibc" else "include-libc"
    return mk_derivation(
        component,
        name=f"bootstrap-stage{toolchain.stage}-{platform.libc}-bootstrapFiles",
        stdenv=toolchain.stdenv,
        shell=toolchain.shell,
        origin=origin,
        system=platform.system,
        inputs=[seed],
        env={
            "buildCommand": f"""\
mkdir -p $out
ln -s {seed}/lib $out/lib
ln -s {seed}/{include} $out/include
""",
        },
        references={"out": (seed.output("out"),)},
    )


def stage_toolchain(prev: "Stage", plan: "StagePlan",
                    policy: WrapperPolicy = WrapperPolicy()) -> ToolchainSpec:
    """The toolchain stage ``plan.index`` builds with, composed from ``prev``.

    For the terminal stage the allowed and disallowed requisite sets are
    resolved here too, from ``prev``, so the stdenv can record them.

    Raises:
        BootstrapError: the plan names a shell or path entry ``prev``
            does not have.
    """
    packages = prev.packages

    def need(key: str) -> ComponentRef:
        if key not in packages:
            raise BootstrapError(
                f"stage {plan.index} ({plan.name}): previous stage has no {key!r}")
        return packages[key]

    platform = prev.platform
    base = ToolchainSpec(
        name=plan.name,
        platform=platform,
        stage=plan.index,
        shell=need(plan.shell),
        initial_path=tuple(need(k) for k in plan.initial_path),
        coreutils=packages.get("coreutils"),
        gnugrep=packages.get("gnugrep"),
        extra_native=tuple(need(k) for k in plan.extra_native_build_inputs),
    )
    compiler = packages.get(plan.cc)
    bintools = packages.get("binutils")
    libc = packages.get(platform.libc)

    if plan.prewrapped_cc is not None:
        toolchain = replace(base, compiler=compiler, cc=need(plan.prewrapped_cc),
                            bintools=bintools, libc=libc)
    else:
        toolchain = bind_toolchain(
            base, compiler, bintools, libc,
            env=packages.get("cc-wrapper-stdenv"),
            expand_response_params=packages.get("expand-response-params"),
            policy=policy,
        )

    if plan.terminal:
        toolchain = replace(
            toolchain,
            allowed_requisites=frozenset(need(k) for k in plan.allowed),
            disallowed_requisites=frozenset(packages[k] for k in plan.disallowed if k in packages),
        )

    name = "stdenv-linux" if plan.terminal else f"bootstrap-stage{plan.index}-stdenv-linux"
    return replace(toolchain, stdenv=make_stdenv(name, toolchain, terminal=plan.terminal))

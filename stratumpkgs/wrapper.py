"""Compiler and linker wrappers.

Like nixpkgs/pkgs/build-support/{cc,bintools}-wrapper. A wrapper pins the
raw compiler to one libc and one linker: every invocation gets the libc's
crt objects, headers and dynamic linker prepended, and search paths that
point outside the store are dropped (or rejected) so host files can never
leak into a build.

The derivation side (``wrap_compiler``, ``wrap_bintools``) writes the
nix-support files; the argument rewriting the installed wrapper script
performs is mirrored by :class:`CompilerShim`, which the wrapper's
ComponentRef carries in ``passthru["shim"]``.
"""

import logging
import tempfile
from dataclasses import dataclass

from stratum.store_path import STORE_DIR
from stratumpkgs.component import ComponentRef, Origin, OutputRef
from stratumpkgs.errors import ImpurePathError
from stratumpkgs.mk_derivation import mk_derivation
from stratumpkgs.platform import PlatformDescriptor, dynamic_linker

logger = logging.getLogger(__name__)

HARDENING_FLAGS = (
    "bindnow format fortify fortify3 "
    "libcxxhardeningextensive libcxxhardeningfast "
    "pic relro stackclashprotection stackprotector "
    "strictoverflow zerocallusedregs"
)

SEARCH_FLAGS = ("-I", "-L", "-isystem", "-idirafter", "-iquote")

# Any of these means the driver stops before linking.
NO_LINK_FLAGS = frozenset({"-c", "-S", "-E", "-M", "-MM"})


@dataclass(frozen=True)
class WrapperPolicy:
    """What the wrapper does with search paths outside the allowed prefixes.

    ``on_impure`` is ``"skip"`` (drop the flag with a warning, like
    NIX_ENFORCE_PURITY) or ``"error"`` (raise ImpurePathError).
    """

    enforce_purity: bool = True
    on_impure: str = "skip"
    allowed_prefixes: tuple[str, ...] = (STORE_DIR, "/build", tempfile.gettempdir())

    def __post_init__(self):
        if self.on_impure not in ("skip", "error"):
            raise ValueError(f"on_impure must be 'skip' or 'error', not {self.on_impure!r}")

    def is_pure(self, path: str) -> bool:
        if not self.enforce_purity or not path.startswith("/"):
            return True
        return any(path == p or path.startswith(p.rstrip("/") + "/")
                   for p in self.allowed_prefixes)


def _split_search_flag(arg: str) -> tuple[str, str] | None:
    """``"-I/usr/include"`` -> ``("-I", "/usr/include")``; ``"-I"`` -> ``("-I", "")``."""
    for flag in sorted(SEARCH_FLAGS, key=len, reverse=True):
        if arg.startswith(flag):
            return flag, arg[len(flag):]
    return None


@dataclass(frozen=True)
class CompilerShim:
    """The argument rewriting of a wrapped compiler.

    ``compiler``, ``bintools`` and ``libc`` are store paths. The libc's
    flags come first so its headers and crt files win over anything the
    compiler itself ships.
    """

    compiler: str
    bintools: str
    libc: str
    libc_dev: str
    dynamic_linker: str
    native: bool = True
    target_prefix: str = ""
    policy: WrapperPolicy = WrapperPolicy()

    @property
    def cflags(self) -> tuple[str, ...]:
        return (
            f"-B{self.libc}/lib/",
            "-idirafter", f"{self.libc_dev}/include",
            f"-B{self.compiler}/lib",
        )

    @property
    def ldflags(self) -> tuple[str, ...]:
        return (
            f"-L{self.libc}/lib",
            f"-L{self.compiler}/lib",
            f"-Wl,-dynamic-linker={self.dynamic_linker}",
        )

    def filter_args(self, args: list[str]) -> list[str]:
        """Drop (or reject) search-path flags naming impure directories."""
        kept: list[str] = []
        i = 0
        while i < len(args):
            arg = args[i]
            split = _split_search_flag(arg)
            if split is None:
                kept.append(arg)
                i += 1
                continue
            flag, path = split
            taken = [arg]
            if not path and i + 1 < len(args):
                path = args[i + 1]
                taken.append(path)
            i += len(taken)
            if self.policy.is_pure(path):
                kept.extend(taken)
            elif self.policy.on_impure == "error":
                raise ImpurePathError(flag, path)
            else:
                logger.warning("impure path %r used in %s flag, skipping", path, flag)
        return kept

    def argv(self, args: list[str], program: str = "gcc",
             linking: bool | None = None) -> list[str]:
        """The raw compiler command line for a wrapped invocation."""
        args = self.filter_args(args)
        if linking is None:
            linking = not any(a in NO_LINK_FLAGS for a in args)
        cmd = [f"{self.compiler}/bin/{self.target_prefix}{program}", *self.cflags, *args]
        if linking:
            cmd.extend(self.ldflags)
        return cmd

    def ld_argv(self, args: list[str]) -> list[str]:
        """The raw linker command line for a wrapped ``ld`` invocation."""
        return [
            f"{self.bintools}/bin/{self.target_prefix}ld",
            "-dynamic-linker", self.dynamic_linker,
            f"-L{self.libc}/lib",
            *self.filter_args(args),
        ]


def _dev(ref: ComponentRef) -> str:
    return ref.outputs.get("dev", ref.out)


def _bin(ref: ComponentRef) -> str:
    return ref.outputs.get("bin", ref.out)


def wrap_bintools(
    component: str,
    name: str,
    *,
    bintools: ComponentRef,
    libc: ComponentRef,
    coreutils: ComponentRef,
    gnugrep: ComponentRef,
    shell: ComponentRef,
    stdenv: ComponentRef,
    platform: PlatformDescriptor,
    origin: Origin,
    target_prefix: str = "",
) -> ComponentRef:
    """Wrap ``bintools`` so ``ld`` always uses ``libc``'s dynamic linker."""
    ld_so = f"{libc.out}/lib/{dynamic_linker(platform)}"
    refs = (bintools.output("out"), libc.output("out"), coreutils.output("out"),
            gnugrep.output("out"), shell.output("out"))
    return mk_derivation(
        component,
        name=name,
        stdenv=stdenv,
        shell=shell,
        origin=origin,
        system=platform.system,
        inputs=[bintools, libc, coreutils, gnugrep],
        env={
            "bintools_bin": _bin(bintools),
            "coreutils_bin": _bin(coreutils),
            "default_hardening_flags_str": HARDENING_FLAGS,
            "dontBuild": True,
            "dontConfigure": True,
            "dynamicLinker": ld_so,
            "gnugrep_bin": _bin(gnugrep),
            "installPhase": """\
mkdir -p $out/bin $out/nix-support
for prog in $bintools_bin/bin/*; do
  ln -s "$prog" "$out/bin/$(basename $prog)"
done
""",
            "libc_bin": _bin(libc),
            "libc_dev": _dev(libc),
            "libc_lib": libc.out,
            "postFixup": f"""\
echo "{ld_so}" > $out/nix-support/dynamic-linker
echo "-L{libc.out}/lib" >> $out/nix-support/libc-ldflags
echo "{libc.out}" > $out/nix-support/orig-libc
""",
            "shell": f"{shell}/bin/bash",
            "suffixSalt": platform.config.replace("-", "_"),
            "targetPrefix": target_prefix,
            "wrapperName": "BINTOOLS_WRAPPER",
        },
        references={"out": refs},
        passthru={"dynamic_linker": ld_so, "bintools": bintools, "libc": libc},
    )


def wrap_compiler(
    component: str,
    name: str,
    *,
    compiler: ComponentRef,
    bintools: ComponentRef,
    libc: ComponentRef,
    coreutils: ComponentRef,
    gnugrep: ComponentRef,
    shell: ComponentRef,
    stdenv: ComponentRef,
    platform: PlatformDescriptor,
    origin: Origin,
    expand_response_params: ComponentRef | None = None,
    native: bool = True,
    target_prefix: str = "",
    policy: WrapperPolicy = WrapperPolicy(),
) -> ComponentRef:
    """Wrap ``compiler`` against ``libc`` and an already wrapped ``bintools``."""
    ld_so = bintools.passthru.get("dynamic_linker") or f"{libc.out}/lib/{dynamic_linker(platform)}"
    shim = CompilerShim(
        compiler=compiler.out,
        bintools=bintools.out,
        libc=libc.out,
        libc_dev=_dev(libc),
        dynamic_linker=ld_so,
        native=native,
        target_prefix=target_prefix,
        policy=policy,
    )
    inputs = [compiler, bintools, libc, coreutils, gnugrep]
    if expand_response_params is not None:
        inputs.append(expand_response_params)
    refs: list[OutputRef] = [*compiler.all_outputs(), bintools.output("out"), *libc.all_outputs(),
                             coreutils.output("out"), gnugrep.output("out"), shell.output("out")]
    if expand_response_params is not None:
        refs.append(expand_response_params.output("out"))

    return mk_derivation(
        component,
        name=name,
        stdenv=stdenv,
        shell=shell,
        origin=origin,
        system=platform.system,
        inputs=inputs,
        env={
            "NIX_ENFORCE_PURITY": policy.enforce_purity,
            "bintools": bintools.out,
            "cc": compiler.out,
            "coreutils_bin": _bin(coreutils),
            "default_hardening_flags_str": HARDENING_FLAGS,
            "dontBuild": True,
            "dontConfigure": True,
            "expandResponseParams": (
                f"{expand_response_params}/bin/expand-response-params"
                if expand_response_params is not None else ""
            ),
            "gnugrep_bin": _bin(gnugrep),
            "installPhase": f"""\
mkdir -p $out/bin $out/nix-support
echo $cc > $out/nix-support/orig-cc
for bbin in $bintools/bin/*; do
  ln -s "$bbin" "$out/bin/$(basename $bbin)"
done
for prog in gcc g++ cpp; do
  if [ -e $cc/bin/{target_prefix}$prog ]; then
    wrap {target_prefix}$prog $wrapper $cc/bin/{target_prefix}$prog
  fi
done
ln -s {target_prefix}gcc $out/bin/{target_prefix}cc
""",
            "libc_bin": _bin(libc),
            "libc_dev": _dev(libc),
            "libc_lib": libc.out,
            "postFixup": f"""\
ln -s "$bintools/nix-support/dynamic-linker" "$out/nix-support"
echo "{' '.join(shim.cflags)}" >> $out/nix-support/cc-cflags
echo "{' '.join(shim.ldflags)}" >> $out/nix-support/cc-ldflags
echo "{libc.out}" > $out/nix-support/orig-libc
echo "{_dev(libc)}" > $out/nix-support/orig-libc-dev
""",
            "propagatedBuildInputs": bintools.out,
            "shell": f"{shell}/bin/bash",
            "suffixSalt": platform.config.replace("-", "_"),
            "targetPrefix": target_prefix,
            "wrapperName": "CC_WRAPPER",
        },
        references={"out": refs},
        passthru={"shim": shim, "compiler": compiler, "bintools": bintools, "libc": libc},
    )


def rehome_bintools(
    component: str,
    *,
    bintools: ComponentRef,
    libc: ComponentRef,
    patchelf: ComponentRef,
    shell: ComponentRef,
    stdenv: ComponentRef,
    platform: PlatformDescriptor,
    origin: Origin,
) -> ComponentRef:
    """Copy ``bintools`` and point its interpreter and rpath at ``libc``.

    The copy keeps whatever the original referenced (the old rpath
    entries are appended, not replaced) and adds ``libc``.
    """
    ld_so = f"{libc.out}/lib/{dynamic_linker(platform)}"
    refs = {
        o: (libc.output("out"), *bintools.references.get(o, ()))
        for o in bintools.outputs
    }
    return mk_derivation(
        component,
        name=bintools.name,
        stdenv=stdenv,
        shell=shell,
        origin=origin,
        system=platform.system,
        inputs=[bintools, libc, patchelf],
        outputs=tuple(bintools.outputs),
        env={
            "buildCommand": f"""\
for o in $outputs; do
  cp -a "$(eval echo "\\$source_$o")" "${{!o}}"
  chmod -R +w "${{!o}}"
done
for i in $out/bin/* $out/libexec/gcc/*/*/*; do
  if [ -L "$i" ] || [ -d "$i" ]; then continue; fi
  if ! isELF "$i"; then continue; fi
  echo "patching $i"
  {patchelf}/bin/patchelf \\
    --set-interpreter {ld_so} \\
    --set-rpath "{libc.out}/lib:$({patchelf}/bin/patchelf --print-rpath "$i")" \\
    "$i" || true
done
""",
            **{f"source_{o}": path for o, path in bintools.outputs.items()},
        },
        references=refs,
        static=bintools.static,
        passthru={"source": bintools},
    )

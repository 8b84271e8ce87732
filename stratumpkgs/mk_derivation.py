"""Python equivalent of stdenv.mkDerivation.

Every stdenv-built component uses the same shape:

    builder: <shell>/bin/bash -e source-stdenv.sh default-builder.sh
    env:     the mkDerivation schema below, plus ``stdenv`` and ``outputs``

The stdenv itself is an input, so anything built in a stage depends on
that stage's stdenv (and through it, on the compiler wrapper).
"""

from typing import Any, Mapping, Sequence

from stratumpkgs.component import ComponentRef, Origin, OutputRef, derive
from stratumpkgs.scripts import GENERIC_SCRIPTS

MKDERIVATION_DEFAULTS = {
    "__structuredAttrs": "",
    "buildInputs": "",
    "configureFlags": "",
    "depsBuildBuild": "",
    "depsBuildTarget": "",
    "depsHostHost": "",
    "depsTargetTarget": "",
    "doCheck": "",
    "doInstallCheck": "",
    "nativeBuildInputs": "",
    "patches": "",
    "propagatedBuildInputs": "",
    "propagatedNativeBuildInputs": "",
    "strictDeps": "1",
}


def env_value(value: Any) -> str:
    """Render an attribute the way Nix coerces it into the environment."""
    if value is True:
        return "1"
    if value is False or value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(env_value(v) for v in value)
    return str(value)


def mk_derivation(
    component: str,
    *,
    stdenv: ComponentRef,
    shell: ComponentRef,
    origin: Origin,
    system: str,
    pname: str | None = None,
    version: str | None = None,
    name: str | None = None,
    inputs: Sequence[ComponentRef] = (),
    srcs: Sequence[str] = (),
    env: Mapping[str, Any] | None = None,
    outputs: Sequence[str] = ("out",),
    references: Mapping[str, Sequence[OutputRef]] | None = None,
    static: bool = False,
    passthru: Mapping[str, Any] | None = None,
) -> ComponentRef:
    """Create a component with the stdenv mkDerivation pattern.

    Either ``name`` or ``pname`` (+ ``version``) names the derivation;
    only the latter puts pname/version in the environment.
    """
    if name is not None:
        drv_name = name
    elif pname is not None:
        drv_name = f"{pname}-{version}" if version else pname
    else:
        raise ValueError("either name or pname is required")

    merged = dict(MKDERIVATION_DEFAULTS)
    merged["outputs"] = " ".join(outputs)
    merged["stdenv"] = stdenv.out
    if pname is not None:
        merged["pname"] = pname
        merged["version"] = version or ""
    for key, value in (env or {}).items():
        merged[key] = env_value(value)

    return derive(
        component, drv_name, f"{shell}/bin/bash",
        origin=origin,
        system=system,
        args=["-e", *GENERIC_SCRIPTS],
        inputs=[stdenv, shell, *inputs],
        srcs=[*GENERIC_SCRIPTS, *srcs],
        env=merged,
        outputs=outputs,
        references=references,
        static=static,
        passthru=passthru,
    )

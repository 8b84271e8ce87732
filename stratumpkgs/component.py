"""Component references: immutable, content-addressed build units.

``derive()`` is the single constructor. It runs the usual pipeline:

    blank outputs -> hashDerivationModulo -> output paths -> fill -> .drv path

and wraps the result in a :class:`ComponentRef`. A ComponentRef is never
mutated; rebuilding always makes a new one. Two rebuilds from identical
inputs compare equal (same .drv path) but are distinct objects, which
is what lets tests tell "inherited" (``is``) from "rebuilt the same
way" (``==``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, NamedTuple, Sequence

from stratum.derivation import (
    Derivation,
    DerivationOutput,
    hash_derivation_modulo,
    parse,
    serialize,
)
from stratum.store_path import make_fixed_output_path, make_output_path, make_text_store_path

SEED_STAGE = -1


class Origin(NamedTuple):
    """Which stage built a component, and under which override."""

    stage: int
    override: str

    def __str__(self) -> str:
        return f"stage{self.stage}:{self.override}"


class OutputRef(NamedTuple):
    """One output of one component; the unit of runtime reference."""

    component: ComponentRef
    output: str = "out"

    @property
    def path(self) -> str:
        return self.component.outputs[self.output]

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True, eq=False)
class ComponentRef:
    """A built (or buildable) component.

    ``component`` is the logical key it is known by in a stage
    ("glibc", "gcc-unwrapped"); ``name`` is its derivation name.
    ``references`` maps each output to the outputs it keeps alive at
    runtime. ``hash_modulo`` is the hash dependents substitute for
    ``drv_path`` when computing their own hashes.
    ``drv_text`` is the ATerm the .drv path was computed from.
    """

    component: str
    name: str
    drv_text: str
    drv_path: str
    outputs: Mapping[str, str]
    hash_modulo: bytes
    origin: Origin
    references: Mapping[str, tuple[OutputRef, ...]]
    static: bool = False
    passthru: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def drv(self) -> Derivation:
        """A parsed copy of the derivation; changing it changes nothing here."""
        return parse(self.drv_text)

    @property
    def out(self) -> str:
        return self.outputs["out"]

    def output(self, name: str = "out") -> OutputRef:
        if name not in self.outputs:
            raise KeyError(f"{self.name} has no output {name!r}")
        return OutputRef(self, name)

    def all_outputs(self) -> tuple[OutputRef, ...]:
        return tuple(OutputRef(self, o) for o in self.outputs)

    def __str__(self) -> str:
        return self.out

    def __repr__(self) -> str:
        return f"<ComponentRef {self.component} {self.drv_path} ({self.origin})>"

    def __eq__(self, other) -> bool:
        if not isinstance(other, ComponentRef):
            return NotImplemented
        return self.drv_path == other.drv_path

    def __hash__(self) -> int:
        return hash(self.drv_path)


def derive(
    component: str,
    name: str,
    builder: str,
    *,
    origin: Origin,
    system: str = "x86_64-linux",
    args: list[str] | None = None,
    env: dict[str, str] | None = None,
    outputs: Sequence[str] = ("out",),
    inputs: Sequence[ComponentRef] = (),
    srcs: Sequence[str] = (),
    references: Mapping[str, Sequence[OutputRef]] | None = None,
    static: bool = False,
    passthru: Mapping[str, Any] | None = None,
    output_hash: str | None = None,
    output_hash_algo: str = "sha256",
    output_hash_mode: str = "flat",
) -> ComponentRef:
    """Create a ComponentRef with computed output paths and .drv path.

    Args:
        component:   Logical key of the component within a stage.
        name:        Derivation name (store path suffix).
        builder:     Builder executable.
        origin:      Stage and override that produced it.
        outputs:     Output names.
        inputs:      Input components; all of their outputs become inputDrvs.
        srcs:        Input source store paths.
        references:  Runtime references per output.
        output_hash: Hex content hash; makes this a fixed-output derivation.
    """
    env = dict(env or {})
    inputs = list(dict.fromkeys(inputs))
    input_drvs = {dep.drv_path: sorted(dep.outputs) for dep in inputs}
    drv_hashes = {dep.drv_path: dep.hash_modulo for dep in inputs}

    if output_hash is not None:
        if list(outputs) != ["out"]:
            raise ValueError("a fixed-output derivation has exactly one output, 'out'")
        recursive = output_hash_mode == "recursive"
        algo = ("r:" if recursive else "") + output_hash_algo
        fixed_path = make_fixed_output_path(
            name, output_hash_algo, bytes.fromhex(output_hash), recursive,
        )
        drv_outputs = {"out": DerivationOutput(fixed_path, algo, output_hash)}
    else:
        drv_outputs = {o: DerivationOutput("") for o in outputs}

    drv = Derivation(
        outputs=drv_outputs,
        input_drvs=input_drvs,
        input_srcs=sorted(set(srcs)),
        platform=system,
        builder=builder,
        args=list(args or []),
        env=env,
    )
    env.setdefault("name", name)
    env.setdefault("builder", builder)
    env.setdefault("system", system)
    for o in outputs:
        env.setdefault(o, "")

    if output_hash is not None:
        paths = {"out": drv_outputs["out"].path}
    else:
        drv_hash = hash_derivation_modulo(drv, drv_hashes)
        paths = {o: make_output_path(drv_hash, o, name) for o in outputs}
        for o, path in paths.items():
            drv.outputs[o] = DerivationOutput(path)
    for o, path in paths.items():
        env[o] = path

    text = serialize(drv)
    drv_path = make_text_store_path(name + ".drv", text.encode(), [*input_drvs, *drv.input_srcs])

    refs = {o: tuple(dict.fromkeys((references or {}).get(o, ()))) for o in outputs}
    return ComponentRef(
        component=component,
        name=name,
        drv_text=text,
        drv_path=drv_path,
        outputs=MappingProxyType(paths),
        hash_modulo=hash_derivation_modulo(drv, drv_hashes, mask_outputs=False),
        origin=origin,
        references=MappingProxyType(refs),
        static=static,
        passthru=MappingProxyType(dict(passthru or {})),
    )

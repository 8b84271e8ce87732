"""Override descriptors and their non-mutating merge.

A stage's override set maps component keys to one of:

    Override(policy, inputs)  rebuild with the stage's toolchain
    Inherit(source)           thread through a previous-stage component
    Alias(target)             re-export a component of the stage being built

Keys that are absent are inherited by reference. Input bindings name
where a recipe role comes from: ``Ref(key)`` is this stage's component
(rebuilt here or inherited), ``Prev(key)`` is the previous stage's.
Nothing older than the previous stage is reachable.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping

STDENV = "stdenv"


@dataclass(frozen=True)
class Ref:
    key: str


@dataclass(frozen=True)
class Prev:
    key: str


def parse_role(spec: str) -> tuple[str, str]:
    """Split ``"role"``, ``"role.output"`` or ``"role.*"`` into (role, output).

    A bare role means its ``out`` output; ``*`` means all outputs.
    """
    role, _, output = spec.partition(".")
    return role, output or "out"


@dataclass(frozen=True)
class NukeReferences:
    """Post-build fixup: strip store references from ``outputs`` in place.

    References to the roles in ``keep`` (same ``role[.output]`` syntax
    as recipe inputs) survive; every other one is rewritten away.
    """

    outputs: tuple[str, ...] = ("out",)
    keep: tuple[str, ...] = ()
    files: str = "lib/lib*.so.*.*"

    TOOL = "nuke-references"

    def roles(self) -> tuple[str, ...]:
        return (self.TOOL, *(parse_role(k)[0] for k in self.keep))


@dataclass(frozen=True)
class OverridePolicy:
    """How a component is rebuilt.

    ``name`` is the tag recorded in the result's Origin. ``recipe``
    selects a recipe other than the component's own (static variants,
    wrappers). ``tag`` is appended to the derivation name so a variant
    can never be mistaken for the ordinary build.
    """

    name: str
    attrs: Mapping[str, Any] = field(default_factory=dict)
    recipe: str | None = None
    static: bool = False
    tag: str = ""
    fixups: tuple[NukeReferences, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "attrs", MappingProxyType(dict(self.attrs)))

    def extend(self, name: str | None = None, **attrs) -> OverridePolicy:
        """A copy with ``attrs`` layered over this policy's."""
        return replace(self, name=name or self.name, attrs={**self.attrs, **attrs})

    def fixup_roles(self) -> tuple[str, ...]:
        return tuple(r for f in self.fixups for r in f.roles())


REBUILD = OverridePolicy("rebuild")


@dataclass(frozen=True)
class Override:
    policy: OverridePolicy = REBUILD
    inputs: Mapping[str, Ref | Prev] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "inputs", MappingProxyType(dict(self.inputs)))


@dataclass(frozen=True)
class Inherit:
    """Take ``source`` (default: the same key) from the previous stage."""

    source: str | None = None


@dataclass(frozen=True)
class Alias:
    """Re-export this stage's ``target``; ``"stdenv"`` is the stage's own stdenv."""

    target: str


Descriptor = Override | Inherit | Alias


def rebuild(policy: OverridePolicy | str = REBUILD, **inputs: Ref | Prev) -> Override:
    """Shorthand: ``rebuild("no-gold", bintools=Ref(...))``."""
    if isinstance(policy, str):
        policy = OverridePolicy(policy)
    return Override(policy, inputs)


def merge_overrides(base: Mapping[str, Descriptor],
                    specific: Mapping[str, Descriptor]) -> Mapping[str, Descriptor]:
    """``base`` united with ``specific``; entries in ``specific`` win.

    Neither argument is modified; the result is read-only.
    """
    return MappingProxyType({**base, **specific})

"""Reference pruning with nuke-refs.

Two flavours:

- in place, as a ``postFixup`` of an ordinary rebuild
  (``OverridePolicy(fixups=(NukeReferences(...),))``);
- as a separate derivation that copies an already built component and
  prunes the copy (``prune_references``), for when the component must
  not be rebuilt, only detached from its build-time toolchain.

The second runs in two phases. Phase one is a plain copy that still
references everything the source did; phase two nukes the copy. Only
phase two is exported.
"""

import logging
import shlex
from typing import Iterable, Mapping

from stratumpkgs.component import ComponentRef, Origin, OutputRef
from stratumpkgs.mk_derivation import mk_derivation
from stratumpkgs.policy import NukeReferences, OverridePolicy, parse_role
from stratumpkgs.scripts import COPY_OUTPUTS_SH

logger = logging.getLogger(__name__)

Refs = Mapping[str, tuple[OutputRef, ...]]


def select(spec: str, inputs: Mapping[str, ComponentRef]) -> tuple[OutputRef, ...]:
    """Resolve a ``role[.output]`` spec against bound inputs."""
    role, output = parse_role(spec)
    ref = inputs[role]
    if output == "*":
        return ref.all_outputs()
    return (ref.output(output),)


def keep_set(fixup: NukeReferences, inputs: Mapping[str, ComponentRef]) -> set[OutputRef]:
    return {r for spec in fixup.keep for r in select(spec, inputs)}


def apply_nuke(refs: Refs, fixup: NukeReferences, keep: set[OutputRef]) -> dict[str, tuple[OutputRef, ...]]:
    """References left after nuking ``fixup.outputs`` down to ``keep``."""
    result = dict(refs)
    for o in fixup.outputs:
        if o not in result:
            continue
        dropped = [r for r in result[o] if r not in keep]
        if dropped:
            logger.debug("nuking %d reference(s) from %s: %s", len(dropped), o,
                         ", ".join(r.path for r in dropped))
        result[o] = tuple(r for r in result[o] if r in keep)
    return result


def nuke_refs_command(tool: ComponentRef, fixup: NukeReferences,
                      keep: Iterable[OutputRef]) -> str:
    excludes = " ".join(f"-e {shlex.quote(r.path)}" for r in sorted(keep, key=lambda r: r.path))
    targets = " ".join(f'"${o}"/{fixup.files}' for o in fixup.outputs)
    return f"{tool}/bin/nuke-refs {excludes} {targets}".replace("  ", " ")


def prune_references(
    component: str,
    *,
    source: ComponentRef,
    inputs: Mapping[str, ComponentRef],
    policy: OverridePolicy,
    shell: ComponentRef,
    stdenv: ComponentRef,
    system: str,
    stage: int,
) -> ComponentRef:
    """Copy ``source`` and strip references not kept by ``policy.fixups``.

    ``inputs`` must bind ``source``, ``nuke-references`` and every role
    named in a fixup's ``keep``. Without fixups every output keeps only
    the source's ``out``.
    """
    fixups = policy.fixups or (NukeReferences(outputs=tuple(source.outputs), keep=("source.out",)),)
    outputs = tuple(source.outputs)
    tool = inputs[NukeReferences.TOOL]

    phase1 = mk_derivation(
        component,
        name=source.name,
        stdenv=stdenv,
        shell=shell,
        origin=Origin(stage, f"{policy.name}:phase1"),
        system=system,
        inputs=[source],
        srcs=[COPY_OUTPUTS_SH],
        outputs=outputs,
        env={
            "buildCommand": f"source {COPY_OUTPUTS_SH}\n",
            **{f"source_{o}": path for o, path in source.outputs.items()},
        },
        references={
            o: (*source.references.get(o, ()), source.output("out"))
            for o in outputs
        },
        static=source.static,
    )

    refs: dict[str, tuple[OutputRef, ...]] = dict(phase1.references)
    commands = []
    bound = {**inputs, "source": source}
    for fixup in fixups:
        keep = keep_set(fixup, bound)
        refs = apply_nuke(refs, fixup, keep)
        commands.append(nuke_refs_command(tool, fixup, keep))

    phase2 = mk_derivation(
        component,
        name=source.name,
        stdenv=stdenv,
        shell=shell,
        origin=Origin(stage, policy.name),
        system=system,
        inputs=[phase1, tool, *(r for r in inputs.values() if r is not source)],
        srcs=[COPY_OUTPUTS_SH],
        outputs=outputs,
        env={
            "buildCommand": f"source {COPY_OUTPUTS_SH}\n" + "\n".join(commands) + "\n",
            **{f"source_{o}": path for o, path in phase1.outputs.items()},
        },
        references=refs,
        static=source.static,
        passthru={"phase1": phase1, "source": source},
    )
    logger.debug("pruned %s: %s -> %s", component, source.out, phase2.out)
    return phase2

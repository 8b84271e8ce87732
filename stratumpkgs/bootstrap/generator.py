"""The stage generator: one bootstrap stage from its predecessor and a plan.

A stage is a read-only mapping of component keys to ComponentRefs plus
the toolchain it was built with. ``generate(prev, plan, ctx)`` copies
``prev``'s mapping, so every key the plan does not mention is inherited
by reference (the very same object), then applies the plan's override
set:

    Inherit(source)   take prev[source] under this key
    Alias(target)     point at this stage's ``target`` once it exists
    Override(...)     rebuild with this stage's toolchain

Overrides may depend on each other (``bison`` needs this stage's
``gnum4``); those edges are ordered with a topological sort and
independent rebuilds run on a thread pool. Every stage also exports its
own stdenv under ``"stdenv"``.
"""

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import Mapping

from stratumpkgs.component import SEED_STAGE, ComponentRef
from stratumpkgs.engine import BuildEngine, InstantiateEngine
from stratumpkgs.errors import BootstrapError, BuildError, CyclicStageDependency, StageOrderError
from stratumpkgs.platform import PlatformDescriptor
from stratumpkgs.policy import (
    STDENV,
    Alias,
    Descriptor,
    Inherit,
    Override,
    Prev,
    Ref,
    merge_overrides,
)
from stratumpkgs.seeds import SeedBundle, seed_components
from stratumpkgs.toolchain import ToolchainSpec, stage_toolchain
from stratumpkgs.wrapper import WrapperPolicy

logger = logging.getLogger(__name__)


def _frozen(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class StagePlan:
    """Everything that distinguishes one stage from the next.

    ``cc`` is the key of the raw compiler taken from the previous stage;
    ``prewrapped_cc`` instead reuses an already wrapped one. ``shell``,
    ``initial_path`` and ``extra_native_build_inputs`` are keys into the
    previous stage too. ``allowed``/``disallowed`` (resolved against the
    previous stage) and ``exports`` (against this one) only matter for
    the terminal stage.
    """

    index: int
    name: str
    overrides: Mapping[str, Descriptor] = field(default_factory=dict)
    cc: str = "gcc-unwrapped"
    prewrapped_cc: str | None = None
    shell: str = "bootstrap-tools"
    initial_path: tuple[str, ...] = ("bootstrap-tools",)
    extra_native_build_inputs: tuple[str, ...] = ()
    terminal: bool = False
    allowed: tuple[str, ...] = ()
    disallowed: tuple[str, ...] = ()
    exports: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "overrides", _frozen(self.overrides))

    def with_overrides(self, overrides: Mapping[str, Descriptor]) -> "StagePlan":
        """A copy whose override set has ``overrides`` layered on top."""
        return replace(self, overrides=merge_overrides(self.overrides, overrides))


@dataclass(frozen=True)
class Stage:
    index: int
    name: str
    platform: PlatformDescriptor
    toolchain: ToolchainSpec | None
    packages: Mapping[str, ComponentRef]
    overrides: Mapping[str, Descriptor] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "packages", _frozen(self.packages))
        object.__setattr__(self, "overrides", _frozen(self.overrides))

    def __getitem__(self, key: str) -> ComponentRef:
        return self.packages[key]

    def __contains__(self, key: str) -> bool:
        return key in self.packages

    def rebuilt(self) -> dict[str, ComponentRef]:
        """Components this stage produced itself."""
        return {k: v for k, v in self.packages.items() if v.origin.stage == self.index}


@dataclass(frozen=True)
class BuildContext:
    engine: BuildEngine = field(default_factory=InstantiateEngine)
    max_workers: int = 1
    wrapper_policy: WrapperPolicy = WrapperPolicy()


def seed_stage(platform: PlatformDescriptor, bundle: SeedBundle) -> Stage:
    """Stage -1: nothing but the seed components."""
    return Stage(SEED_STAGE, "seed", platform, None, seed_components(bundle))


class _Node:
    """An override waiting to be built, with its input bindings."""

    def __init__(self, key: str, descriptor: Override | Alias, bindings: dict[str, Ref | Prev]):
        self.key = key
        self.descriptor = descriptor
        self.bindings = bindings


def _plan_nodes(prev: Stage, plan: StagePlan, ctx: BuildContext,
                packages: dict[str, ComponentRef]) -> dict[str, _Node]:
    """Resolve inherits into ``packages`` and return the nodes to build.

    Raises BuildError for any binding that names a component neither
    this stage nor the previous one has.
    """
    index = plan.index
    libc = prev.platform.libc
    nodes: dict[str, _Node] = {}

    for key, d in plan.overrides.items():
        if isinstance(d, Inherit):
            source = d.source or key
            if source not in prev.packages:
                raise BuildError(key, index, f"previous stage has no {source!r} to inherit")
            packages[key] = prev.packages[source]
        elif isinstance(d, Alias):
            nodes[key] = _Node(key, d, {"target": Ref(d.target)})
        elif isinstance(d, Override):
            try:
                recipe = ctx.engine.recipe_for(key, d.policy)
            except BuildError as e:
                raise BuildError(key, index, e.reason) from e
            roles = [*recipe.input_roles(recipe.attrs(d.policy.attrs)),
                     *d.policy.fixup_roles(), *d.inputs]
            bindings = {
                role: d.inputs.get(role) or Ref(recipe.default_key(role, libc))
                for role in dict.fromkeys(roles)
            }
            nodes[key] = _Node(key, d, bindings)
        else:
            raise BootstrapError(f"stage {index}: {key!r} has unknown descriptor {d!r}")

    for node in nodes.values():
        for role, binding in node.bindings.items():
            if isinstance(binding, Prev):
                known = binding.key in prev.packages
            else:
                known = binding.key in nodes or binding.key in packages
            if not known:
                raise BuildError(node.key, index, f"input {role!r} names unknown component {binding}")
    return nodes


def _graph(nodes: dict[str, _Node]) -> dict[str, set[str]]:
    return {
        key: {b.key for b in node.bindings.values() if isinstance(b, Ref) and b.key in nodes}
        for key, node in nodes.items()
    }


def generate(prev: Stage, plan: StagePlan, ctx: BuildContext = BuildContext()) -> Stage:
    """Build stage ``plan.index`` from ``prev``.

    Raises:
        StageOrderError: ``prev`` is not the stage directly before.
        CyclicStageDependency: the overrides depend on each other in a cycle.
        BuildError: a rebuild failed; nothing of the stage is returned.
    """
    if not isinstance(prev, Stage):
        raise StageOrderError(
            f"stage {plan.index} ({plan.name}) must be generated from a Stage, "
            f"not {type(prev).__name__}")
    if prev.index != plan.index - 1:
        raise StageOrderError(
            f"stage {plan.index} ({plan.name}) must follow stage {plan.index - 1}, "
            f"got stage {prev.index}")

    index = plan.index
    logger.info("stage %d (%s): %d override(s)", index, plan.name, len(plan.overrides))
    toolchain = stage_toolchain(prev, plan, ctx.wrapper_policy)

    packages = dict(prev.packages)
    packages[STDENV] = toolchain.stdenv
    nodes = _plan_nodes(prev, plan, ctx, packages)

    sorter = TopologicalSorter(_graph(nodes))
    try:
        sorter.prepare()
    except CycleError as e:
        raise CyclicStageDependency(index, e.args[1]) from e

    def resolve(binding: Ref | Prev) -> ComponentRef:
        source = prev.packages if isinstance(binding, Prev) else packages
        return source[binding.key]

    pool = ThreadPoolExecutor(max_workers=ctx.max_workers, thread_name_prefix=f"stage{index}")
    running: dict[Future, str] = {}
    try:
        while sorter.is_active():
            for key in sorter.get_ready():
                node = nodes[key]
                if isinstance(node.descriptor, Alias):
                    packages[key] = resolve(node.bindings["target"])
                    sorter.done(key)
                    continue
                inputs = {role: resolve(b) for role, b in node.bindings.items()}
                logger.debug("stage %d: rebuilding %s (%s)", index, key, node.descriptor.policy.name)
                fut = pool.submit(ctx.engine.rebuild, toolchain, key, node.descriptor.policy,
                                  inputs=inputs, stage=index)
                running[fut] = key
            if not running:
                continue
            done, _ = wait(running, return_when=FIRST_COMPLETED)
            for fut in done:
                key = running.pop(fut)
                packages[key] = _result(fut, key, index)
                sorter.done(key)
    except BaseException:
        pool.shutdown(wait=False, cancel_futures=True)
        raise
    pool.shutdown()

    if plan.terminal:
        missing = [k for k in plan.exports if k not in packages]
        if missing:
            raise BootstrapError(f"stage {index}: cannot export unknown {missing}")
        toolchain = replace(toolchain, exports=_frozen({k: packages[k] for k in plan.exports}))

    stage = Stage(index, plan.name, prev.platform, toolchain, packages, plan.overrides)
    logger.info("stage %d (%s): %d rebuilt, %d inherited", index, plan.name,
                len(stage.rebuilt()), len(packages) - len(stage.rebuilt()))
    return stage


def _result(fut: Future, key: str, index: int) -> ComponentRef:
    try:
        return fut.result()
    except BuildError:
        raise
    except Exception as e:
        raise BuildError(key, index, f"{type(e).__name__}: {e}") from e

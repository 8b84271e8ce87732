"""The build engine: turns (toolchain, recipe, policy, inputs) into a component.

The stage generator only decides *what* gets rebuilt and with which
inputs; how a rebuild is expressed is the engine's business. Any object
with the :class:`BuildEngine` shape can be plugged in.
:class:`InstantiateEngine` instantiates derivations (drv paths, output
paths, runtime references) without running any builder, which is all
the staging algorithm and the closure audit need.
"""

import logging
from typing import Callable, Mapping, Protocol

from stratumpkgs.component import ComponentRef, Origin, OutputRef
from stratumpkgs.errors import BuildError
from stratumpkgs.fetchurl import fetch_source
from stratumpkgs.mk_derivation import mk_derivation
from stratumpkgs.policy import NukeReferences, OverridePolicy
from stratumpkgs.prune import apply_nuke, keep_set, nuke_refs_command, prune_references, select
from stratumpkgs.recipes import DEFAULT_RECIPES, Recipe
from stratumpkgs.toolchain import ToolchainSpec, libc_placeholder
from stratumpkgs.wrapper import WrapperPolicy, rehome_bintools, wrap_bintools, wrap_compiler

logger = logging.getLogger(__name__)

Inputs = Mapping[str, ComponentRef]


class BuildEngine(Protocol):
    def recipe_for(self, component: str, policy: OverridePolicy) -> Recipe:
        """The recipe ``component`` is rebuilt from under ``policy``."""

    def rebuild(self, toolchain: ToolchainSpec, component: str, policy: OverridePolicy,
                *, inputs: Inputs, stage: int) -> ComponentRef:
        """Rebuild ``component`` with ``toolchain``; raises BuildError on failure."""


class InstantiateEngine:
    """Instantiates derivations from a recipe catalog."""

    def __init__(self, recipes: Mapping[str, Recipe] = DEFAULT_RECIPES,
                 wrapper_policy: WrapperPolicy = WrapperPolicy()):
        self.recipes = recipes
        self.wrapper_policy = wrapper_policy
        self._builders: dict[str, Callable[..., ComponentRef]] = {
            "generic": self._generic,
            "libc-placeholder": self._libc_placeholder,
            "bintools-wrapper": self._bintools_wrapper,
            "cc-wrapper": self._cc_wrapper,
            "rehome-bintools": self._rehome_bintools,
            "prune-references": self._prune_references,
        }

    def recipe_for(self, component: str, policy: OverridePolicy) -> Recipe:
        key = policy.recipe or component
        recipe = self.recipes.get(key)
        if recipe is None:
            raise BuildError(component, -1, f"no recipe {key!r}")
        return recipe

    def rebuild(self, toolchain: ToolchainSpec, component: str, policy: OverridePolicy,
                *, inputs: Inputs, stage: int) -> ComponentRef:
        recipe = self.recipe_for(component, policy)
        if recipe.needs_cc and not toolchain.can_compile:
            raise BuildError(component, stage, f"{toolchain.name} has no C compiler")
        if toolchain.stdenv is None:
            raise BuildError(component, stage, f"{toolchain.name} has no stdenv")
        builder = self._builders.get(recipe.builder)
        if builder is None:
            raise BuildError(component, stage, f"unknown builder {recipe.builder!r}")
        try:
            ref = builder(toolchain, component, recipe, policy, inputs, Origin(stage, policy.name))
        except KeyError as e:
            raise BuildError(component, stage, f"unbound input {e}") from e
        logger.debug("stage %d: %s -> %s", stage, component, ref.drv_path)
        return ref

    def _generic(self, toolchain: ToolchainSpec, component: str, recipe: Recipe,
                 policy: OverridePolicy, inputs: Inputs, origin: Origin) -> ComponentRef:
        attrs = recipe.attrs(policy.attrs)
        specs = recipe.runtime_specs(attrs)

        runtime: list[OutputRef] = [
            r for spec in specs for r in select(spec, inputs) if not r.component.static
        ]
        if recipe.links_libc and not policy.static and toolchain.libc is not None:
            runtime.append(toolchain.libc.output("out"))
        refs = {o: tuple(runtime) for o in recipe.outputs}

        post_fixup = []
        for fixup in policy.fixups:
            keep = keep_set(fixup, inputs)
            refs = apply_nuke(refs, fixup, keep)
            post_fixup.append(nuke_refs_command(inputs[NukeReferences.TOOL], fixup, keep))

        env = dict(attrs)
        build_roles = [r for r in recipe.build if r in inputs]
        env["buildInputs"] = " ".join(r.path for spec in specs for r in select(spec, inputs))
        env["nativeBuildInputs"] = " ".join(inputs[r].out for r in build_roles)
        if post_fixup:
            env["postFixup"] = "\n".join(post_fixup) + "\n"
        if policy.static:
            env["configureFlags"] = "--enable-static --disable-shared"
            env["dontDisableStatic"] = True

        deps = list(inputs.values())
        if recipe.src is not None:
            src = fetch_source(recipe.src, origin.stage)
            env["src"] = src.out
            deps.append(src)

        pname = f"{recipe.pname}-{policy.tag}" if policy.tag else recipe.pname
        return mk_derivation(
            component,
            pname=pname,
            version=recipe.version,
            stdenv=toolchain.stdenv,
            shell=toolchain.shell,
            origin=origin,
            system=toolchain.platform.system,
            inputs=deps,
            env=env,
            outputs=recipe.outputs,
            references=refs,
            static=policy.static,
        )

    def _libc_placeholder(self, toolchain, component, recipe, policy, inputs, origin):
        return libc_placeholder(component, seed=inputs["seed"], toolchain=toolchain, origin=origin)

    def _bintools_wrapper(self, toolchain, component, recipe, policy, inputs, origin):
        shell = inputs.get("shell", toolchain.shell)
        return wrap_bintools(
            component,
            f"bootstrap-stage{origin.stage}-binutils-wrapper",
            bintools=inputs["bintools"],
            libc=inputs["libc"],
            coreutils=inputs["coreutils"],
            gnugrep=inputs["gnugrep"],
            shell=shell,
            stdenv=toolchain.stdenv,
            platform=toolchain.platform,
            origin=origin,
        )

    def _cc_wrapper(self, toolchain, component, recipe, policy, inputs, origin):
        return wrap_compiler(
            component,
            f"bootstrap-stage{origin.stage}-gcc-wrapper",
            compiler=inputs["cc"],
            bintools=inputs["bintools"],
            libc=inputs["libc"],
            coreutils=inputs["coreutils"],
            gnugrep=inputs["gnugrep"],
            shell=inputs.get("shell", toolchain.shell),
            stdenv=toolchain.stdenv,
            platform=toolchain.platform,
            origin=origin,
            expand_response_params=inputs.get("expand-response-params"),
            native=toolchain.native,
            policy=self.wrapper_policy,
        )

    def _rehome_bintools(self, toolchain, component, recipe, policy, inputs, origin):
        return rehome_bintools(
            component,
            bintools=inputs["bintools"],
            libc=inputs["libc"],
            patchelf=inputs["patchelf"],
            shell=toolchain.shell,
            stdenv=toolchain.stdenv,
            platform=toolchain.platform,
            origin=origin,
        )

    def _prune_references(self, toolchain, component, recipe, policy, inputs, origin):
        return prune_references(
            component,
            source=inputs["source"],
            inputs=inputs,
            policy=policy,
            shell=toolchain.shell,
            stdenv=toolchain.stdenv,
            system=toolchain.platform.system,
            stage=origin.stage,
        )

"""Run the whole chain: seed -> stage0 -> ... -> stage5 -> audit.

Stages are generated strictly in order, each from the one before it.
"""

import logging
from typing import Mapping

from stratum.config import StratumConfig
from stratumpkgs.bootstrap.closure import AuditReport, audit
from stratumpkgs.bootstrap.generator import BuildContext, Stage, StagePlan, generate, seed_stage
from stratumpkgs.bootstrap.plans import default_plans, layer_user_overrides
from stratumpkgs.engine import BuildEngine, InstantiateEngine
from stratumpkgs.platform import CanExecute, PlatformDescriptor, can_execute
from stratumpkgs.policy import Descriptor
from stratumpkgs.seeds import DEFAULT_SEED_TABLE, SeedTable, load_seed_table, resolve_seed_bundle
from stratumpkgs.toolchain import ToolchainSpec
from stratumpkgs.wrapper import WrapperPolicy

logger = logging.getLogger(__name__)

__all__ = ["run_chain", "bootstrap", "audit", "options_from_config"]


def run_chain(
    platform: PlatformDescriptor,
    *,
    table: SeedTable = DEFAULT_SEED_TABLE,
    predicate: CanExecute = can_execute,
    engine: BuildEngine | None = None,
    max_workers: int = 1,
    wrapper_policy: WrapperPolicy = WrapperPolicy(),
    user_overrides: Mapping[int, Mapping[str, Descriptor]] | None = None,
    plans: list[StagePlan] | None = None,
) -> list[Stage]:
    """Generate every stage for ``platform``; the seed stage comes first.

    Raises:
        UnsupportedPlatform: no seed bundle can run on ``platform``.
        ValueError: ``user_overrides`` names a stage that is not planned.
        BuildError, CyclicStageDependency: from the stage generator.
    """
    bundle = resolve_seed_bundle(platform, table, predicate)
    logger.info("bootstrapping %s from seed %s/%s", platform, bundle.system, bundle.libc)
    ctx = BuildContext(
        engine=engine or InstantiateEngine(wrapper_policy=wrapper_policy),
        max_workers=max_workers,
        wrapper_policy=wrapper_policy,
    )
    if plans is None:
        plans = default_plans(platform, user_overrides)
    else:
        plans = layer_user_overrides(plans, user_overrides)

    stages = [seed_stage(platform, bundle)]
    for plan in plans:
        stages.append(generate(stages[-1], plan, ctx))
    return stages


def bootstrap(platform: PlatformDescriptor, **kwargs) -> ToolchainSpec:
    """The audited terminal toolchain for ``platform``.

    Takes the keyword arguments of :func:`run_chain`.

    Raises:
        AuditFailure: the terminal closure still reaches the seed or
            something it does not list.
    """
    stages = run_chain(platform, **kwargs)
    toolchain = stages[-1].toolchain
    report: AuditReport = audit(toolchain)
    report.raise_for_status()
    logger.info("%s: closure of %d component(s) is clean", toolchain.name, report.checked)
    return toolchain


def options_from_config(config: StratumConfig) -> dict:
    """``run_chain`` keyword arguments for a loaded configuration."""
    options = {
        "max_workers": config.max_workers,
        "wrapper_policy": WrapperPolicy(enforce_purity=config.enforce_purity),
    }
    if config.seed_table:
        options["table"] = load_seed_table(config.seed_table)
    return options

"""The bootstrap chain: seed -> stage0 ... stage5 -> audited toolchain.

Like nixpkgs/pkgs/stdenv/linux/default.nix, the bootstrap is a list of
stages. Each stage takes the previous one's packages, rebuilds the few
its plan overrides with the previous stage's toolchain, and inherits
everything else unchanged.

    seed -> stage0 -> stage1 -> stage2 -> stage3 -> stage4 -> final

Plans live in ``stratumpkgs.bootstrap.plans``; the generator that applies
one is in ``stratumpkgs.bootstrap.generator``.
"""

from stratumpkgs.bootstrap.chain import bootstrap, run_chain
from stratumpkgs.bootstrap.closure import AuditReport, audit, audit_components, closure
from stratumpkgs.bootstrap.generator import BuildContext, Stage, StagePlan, generate, seed_stage
from stratumpkgs.bootstrap.plans import default_plans

__all__ = [
    "run_chain", "bootstrap",
    "audit", "audit_components", "closure", "AuditReport",
    "Stage", "StagePlan", "BuildContext", "generate", "seed_stage",
    "default_plans",
]

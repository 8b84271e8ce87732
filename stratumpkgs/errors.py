"""Errors raised while resolving, generating and auditing bootstrap stages.

Nothing here is recovered from inside the bootstrap: every error carries
enough context (stage index, component name, reference path) to be
diagnosed by the caller without re-running the chain.
"""


class BootstrapError(Exception):
    """Base class for all bootstrap failures."""


class UnsupportedPlatform(BootstrapError):
    """No seed bundle can run on the requested platform."""

    def __init__(self, platform, reason: str = ""):
        self.platform = platform
        msg = f"no compatible seed bundle for {platform}"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class CyclicStageDependency(BootstrapError):
    """The override set of a stage contains a dependency cycle."""

    def __init__(self, stage: int, cycle: list[str]):
        self.stage = stage
        self.cycle = list(cycle)
        super().__init__(f"stage {stage}: dependency cycle {' -> '.join(self.cycle)}")


class StageOrderError(BootstrapError, TypeError):
    """A stage was generated from something other than its direct predecessor."""


class BuildError(BootstrapError):
    """Rebuilding a component failed."""

    def __init__(self, component: str, stage: int, reason: str):
        self.component = component
        self.stage = stage
        self.reason = reason
        super().__init__(f"stage {stage}: cannot build {component!r}: {reason}")


class SearchPathConflict(BootstrapError):
    """The libc shares a prefix with the compiler it is bound to."""


class ImpurePathError(BootstrapError):
    """A wrapped compiler was asked to search outside the store."""

    def __init__(self, flag: str, path: str):
        self.flag = flag
        self.path = path
        super().__init__(f"impure path {path!r} passed with {flag}")


class AuditFailure(BootstrapError):
    """Base class for terminal closure violations."""

    def __init__(self, reference, path):
        self.reference = reference
        self.path = tuple(path)
        chain = " -> ".join(str(p) for p in self.path)
        super().__init__(f"{self.describe} {reference}: {chain}")

    describe = "closure violation at"


class PurityViolation(AuditFailure):
    """A forbidden (seed) component is reachable from the terminal toolchain."""

    describe = "forbidden reference"


class UnlistedReference(AuditFailure):
    """A reference is neither allowed nor produced by the terminal stage."""

    describe = "unlisted reference"

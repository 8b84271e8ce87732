"""The closure auditor: is the seed really gone?

The runtime closure of a set of roots is everything reachable through
``ComponentRef.references``. For the final toolchain every reachable
component must be either in the allowed set or built by the final stage
itself, and none may be in the forbidden set (the seed). Each violation
carries the chain of store paths that reaches it, like
``nix why-depends``.

``audit_tree`` applies the same rules to real directories by scanning
file contents for store hashes.
"""

import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from stratum.refs import find_store_paths
from stratumpkgs.component import ComponentRef, OutputRef
from stratumpkgs.errors import AuditFailure, PurityViolation, UnlistedReference

logger = logging.getLogger(__name__)

Closure = Mapping[OutputRef, tuple[OutputRef, ...]]


def closure(roots: Iterable[ComponentRef]) -> dict[OutputRef, tuple[OutputRef, ...]]:
    """Every output reachable from ``roots``, with the shortest path to it.

    All outputs of each root count as roots. Paths start at a root and
    end at the output they lead to.
    """
    paths: dict[OutputRef, tuple[OutputRef, ...]] = {}
    queue: deque[OutputRef] = deque()
    for root in roots:
        for out in root.all_outputs():
            if out not in paths:
                paths[out] = (out,)
                queue.append(out)
    while queue:
        current = queue.popleft()
        for ref in current.component.references.get(current.output, ()):
            if ref not in paths:
                paths[ref] = (*paths[current], ref)
                queue.append(ref)
    return paths


@dataclass(frozen=True)
class AuditReport:
    closure: Closure
    violations: tuple[AuditFailure, ...] = ()
    checked: int = 0

    @property
    def ok(self) -> bool:
        return not self.violations

    def raise_for_status(self) -> None:
        if self.violations:
            raise self.violations[0]

    def components(self) -> set[ComponentRef]:
        return {r.component for r in self.closure}


def audit_components(
    roots: Iterable[ComponentRef],
    allowed: Iterable[ComponentRef] | None,
    forbidden: Iterable[ComponentRef],
    terminal_stage: int,
) -> AuditReport:
    """Check the closure of ``roots``.

    ``allowed=None`` skips the allowed-set check; only forbidden
    components are reported then.
    """
    forbidden = set(forbidden)
    allowed = set(allowed) if allowed is not None else None
    paths = closure(roots)

    violations: list[AuditFailure] = []
    seen: set[ComponentRef] = set()
    for ref, path in paths.items():
        component = ref.component
        if component in seen:
            continue
        seen.add(component)
        chain = [r.path for r in path]
        if component in forbidden:
            violations.append(PurityViolation(ref.path, chain))
        elif (allowed is not None and component not in allowed
              and component.origin.stage != terminal_stage):
            violations.append(UnlistedReference(ref.path, chain))

    for v in violations:
        logger.warning("%s", v)
    logger.info("audited %d output(s) of %d component(s): %d violation(s)",
                len(paths), len(seen), len(violations))
    return AuditReport(paths, tuple(violations), len(seen))


def audit(toolchain, allowed: Iterable[ComponentRef] | None = None,
          forbidden: Iterable[ComponentRef] | None = None) -> AuditReport:
    """Audit a toolchain's full output set: its components and exports.

    Defaults to the toolchain's own requisite sets.
    """
    if allowed is None:
        allowed = toolchain.allowed_requisites
    if forbidden is None:
        forbidden = toolchain.disallowed_requisites
    return audit_components(toolchain.roots(), allowed, forbidden, toolchain.stage)


def audit_tree(
    roots: Iterable[str | Path],
    allowed: Iterable[str],
    forbidden: Iterable[str] = (),
) -> list[tuple[str, str]]:
    """Check real store trees: which forbidden or unlisted paths do they reference?

    Walks the reference graph on disk, starting from ``roots`` and
    following every referenced path that exists. Returns
    ``(referrer, reference)`` pairs; empty means clean.
    """
    roots = [str(r) for r in roots]
    allowed = set(allowed)
    forbidden = set(forbidden)

    bad: list[tuple[str, str]] = []
    seen = set(roots)
    queue = deque(roots)
    while queue:
        path = queue.popleft()
        for ref in sorted(find_store_paths(path)):
            if ref == path:
                continue
            if ref in forbidden or ref not in allowed:
                bad.append((path, ref))
            if ref not in seen and Path(ref).exists():
                seen.add(ref)
                queue.append(ref)
    return bad

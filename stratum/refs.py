"""Find and strip store references inside built artifacts.

A reference is any occurrence of another store path's hash part in a
file's bytes or a symlink's target. That is how Nix discovers runtime
dependencies after a build, and also why rewriting the hash in place is
enough to drop one.

See: nix/src/libstore/references.cc (scanForReferences) and
nixpkgs pkgs/build-support/nuke-references/nuke-refs.sh
"""

import logging
import os
import re
from pathlib import Path

from stratum.store_path import HASH_CHARS, STORE_DIR, hash_part

logger = logging.getLogger(__name__)

NUKED_HASH = "e" * HASH_CHARS

_REF_RE = re.compile(
    re.escape(STORE_DIR).encode()
    + rb"/([0-9a-df-np-sv-z]{" + str(HASH_CHARS).encode() + rb"})-"
)


def _walk(root: Path):
    """Yield every regular file and symlink under ``root`` in sorted order."""
    if root.is_symlink() or root.is_file():
        yield root
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for d in dirnames:
            if (base / d).is_symlink():
                yield base / d
        for f in sorted(filenames):
            yield base / f


def scan_references(path: str | Path, candidates) -> set[str]:
    """Return the subset of ``candidates`` (store paths) referenced under ``path``."""
    by_hash = {hash_part(c): c for c in candidates}
    found: set[str] = set()
    for p in _walk(Path(path)):
        data = os.readlink(p).encode() if p.is_symlink() else p.read_bytes()
        for h in _REF_RE.findall(data):
            c = by_hash.get(h.decode())
            if c is not None:
                found.add(c)
        if len(found) == len(by_hash):
            break
    return found


_PATH_RE = re.compile(
    re.escape(STORE_DIR).encode()
    + rb"/[0-9a-df-np-sv-z]{" + str(HASH_CHARS).encode() + rb"}-[A-Za-z0-9+._?=-]+"
)


def find_store_paths(path: str | Path) -> set[str]:
    """Every store path mentioned under ``path``, whatever it is."""
    found: set[str] = set()
    for p in _walk(Path(path)):
        data = os.readlink(p).encode() if p.is_symlink() else p.read_bytes()
        found.update(m.decode() for m in _PATH_RE.findall(data))
    return found


def nuke_references(path: str | Path, exclude=()) -> list[Path]:
    """Overwrite store hashes under ``path`` with ``eee...``, in place.

    Hashes of the store paths in ``exclude`` survive. Symlinks are left
    alone, and file modes are preserved. Returns the files that changed.
    """
    keep = {hash_part(e).encode() for e in exclude}
    nuked = NUKED_HASH.encode()

    def repl(m: re.Match) -> bytes:
        if m.group(1) in keep:
            return m.group(0)
        return m.group(0).replace(m.group(1), nuked)

    changed = []
    for p in _walk(Path(path)):
        if p.is_symlink():
            continue
        data = p.read_bytes()
        rewritten = _REF_RE.sub(repl, data)
        if rewritten != data:
            mode = p.stat().st_mode
            p.chmod(mode | 0o200)
            p.write_bytes(rewritten)
            p.chmod(mode)
            changed.append(p)
            logger.debug("nuked references in %s", p)
    return changed

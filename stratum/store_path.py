"""Store path computation.

A store path is ``/nix/store/<hash>-<name>`` where ``<hash>`` is 32
base32 characters over a 20-byte XOR-folded SHA-256 of a fingerprint:

    "<type>:sha256:<hex(inner)>:/nix/store:<name>"

``<type>`` is ``text`` for literal file contents, ``source`` for
recursively hashed trees and ``output:<out>`` for derivation outputs.
References are appended to the type with ``:`` separators; with no
references there is no trailing colon.

See: nix/src/libstore/store-api.cc (makeStorePath, makeTextPath)
"""

import re

from stratum.digest import b32encode, compress_hash, sha256

STORE_DIR = "/nix/store"
HASH_BYTES = 20
HASH_CHARS = 32

_STORE_PATH_RE = re.compile(
    rf"^{re.escape(STORE_DIR)}/([0-9a-df-np-sv-z]{{{HASH_CHARS}}})-([^/]+)"
)


def make_store_path(type_prefix: str, inner_hash: bytes, name: str) -> str:
    fingerprint = f"{type_prefix}:sha256:{inner_hash.hex()}:{STORE_DIR}:{name}"
    folded = compress_hash(sha256(fingerprint.encode()), HASH_BYTES)
    return f"{STORE_DIR}/{b32encode(folded)}-{name}"


def _with_refs(base: str, refs) -> str:
    return ":".join([base, *sorted(refs)])


def make_text_store_path(name: str, content: bytes, references: list[str] | None = None) -> str:
    """Store path for literal text (``builtins.toFile``, ``writeText``)."""
    return make_store_path(_with_refs("text", references or []), sha256(content), name)


def make_fixed_output_path(name: str, hash_algo: str, content_hash: bytes,
                           recursive: bool = False) -> str:
    """Store path of a fixed-output derivation (``fetchurl``).

    Recursive sha256 is addressed like a source import; every other
    combination goes through an intermediate ``fixed:out:`` descriptor.
    """
    if recursive and hash_algo == "sha256":
        return make_store_path("source", content_hash, name)
    method = "r:" if recursive else ""
    inner = sha256(f"fixed:out:{method}{hash_algo}:{content_hash.hex()}:".encode())
    return make_store_path("output:out", inner, name)


def make_output_path(drv_hash: bytes, output_name: str, name: str) -> str:
    """Store path of a derivation output; non-``out`` outputs get a suffix."""
    path_name = name if output_name == "out" else f"{name}-{output_name}"
    return make_store_path(f"output:{output_name}", drv_hash, path_name)


def parse_store_path(path: str) -> tuple[str, str]:
    """Split a store path (or a path beneath one) into ``(hash, name)``."""
    m = _STORE_PATH_RE.match(path)
    if not m:
        raise ValueError(f"not a store path: {path!r}")
    return m.group(1), m.group(2)


def hash_part(path: str) -> str:
    return parse_store_path(path)[0]


def is_store_path(path: str) -> bool:
    return _STORE_PATH_RE.match(path) is not None

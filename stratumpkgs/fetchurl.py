"""Fixed-output fetches via ``builtin:fetchurl``.

The daemon-side builtin needs no tools at all, which is the only way to
start: nothing can be downloaded by a downloader that has not been built
yet. Only the declared content hash feeds the output path, so mirrors
and build inputs never move it.

nixpkgs spells the hash three ways, each giving different .drv bytes:

    hash = "sha256-<base64>"      outputHash=SRI,   outputHashAlgo=""
    sha256 = "sha256-<base64>"    outputHash=SRI,   outputHashAlgo="sha256"
    sha256 = "<nix32>"            outputHash=nix32, outputHashAlgo="sha256"
"""

import base64
from typing import NamedTuple

from stratum.digest import b32decode
from stratumpkgs.component import SEED_STAGE, ComponentRef, Origin, derive

FETCHURL_ENV = {
    "impureEnvVars": "http_proxy https_proxy ftp_proxy all_proxy no_proxy",
    "preferLocalBuild": "1",
}


class Source(NamedTuple):
    """Where a tarball comes from and what it must hash to."""

    name: str
    url: str
    hash: str
    style: str = "hash"  # "hash", "sha256" or "nix32"


def _sri(hex_hash: str) -> str:
    return "sha256-" + base64.b64encode(bytes.fromhex(hex_hash)).decode()


def fetchurl(name: str, url: str, sha256: str, *, style: str = "hash",
             recursive: bool = False, executable: bool = False, component: str | None = None,
             origin: Origin = Origin(SEED_STAGE, "fetchurl")) -> ComponentRef:
    """A ``builtin:fetchurl`` derivation for ``url``.

    ``sha256`` is hex, except with ``style="nix32"`` where it is the
    Nix base32 string as written in nixpkgs.
    """
    if style == "nix32":
        hex_hash, env_hash, env_algo = b32decode(sha256).hex(), sha256, "sha256"
    elif style == "sha256":
        hex_hash, env_hash, env_algo = sha256, _sri(sha256), "sha256"
    elif style == "hash":
        hex_hash, env_hash, env_algo = sha256, _sri(sha256), ""
    else:
        raise ValueError(f"unknown fetchurl hash style {style!r}")

    mode = "recursive" if recursive else "flat"
    return derive(
        component or name, name, "builtin:fetchurl",
        origin=origin,
        system="builtin",
        output_hash=hex_hash,
        output_hash_mode=mode,
        env={
            **FETCHURL_ENV,
            "executable": "1" if executable else "",
            "outputHash": env_hash,
            "outputHashAlgo": env_algo,
            "outputHashMode": mode,
            "unpack": "",
            "url": url,
            "urls": url,
        },
    )


def fetch_source(src: Source, stage: int) -> ComponentRef:
    return fetchurl(src.name, src.url, src.hash, style=src.style, origin=Origin(stage, "source"))

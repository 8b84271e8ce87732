"""Tests for store path computation."""

import pytest

from stratum.digest import sha256
from stratum.store_path import (
    STORE_DIR,
    hash_part,
    is_store_path,
    make_fixed_output_path,
    make_output_path,
    make_text_store_path,
    parse_store_path,
)

# Out paths of the x86_64-linux seed fetches, as nix-instantiate computes them.
BUSYBOX_SHA256 = "42b4c49d04c133563fa95f6876af22ad9910483f6e38c6ecd90e4d802bca08d4"
BUSYBOX_OUT = "/nix/store/p9wzypb84a60ymqnhqza17ws0dvlyprg-busybox"
TARBALL_SHA256 = "61096bd3cf073e8556054da3a4f86920cc8eca81036580f0d72eb448619b50cd"
TARBALL_OUT = "/nix/store/2pizl7lq4awa7p9bklr8037yh1sca0hg-bootstrap-tools.tar.xz"


def test_text_store_path_format():
    """Store path has correct format: /nix/store/<32-char-hash>-<name>."""
    path = make_text_store_path("hello.txt", b"hello world")
    assert path.startswith(STORE_DIR + "/")
    h, name = parse_store_path(path)
    assert len(h) == 32
    assert name == "hello.txt"


def test_text_store_path_deterministic():
    """Same inputs always produce the same store path."""
    assert make_text_store_path("test", b"content") == make_text_store_path("test", b"content")


def test_text_store_path_content_sensitive():
    assert make_text_store_path("test", b"aaa") != make_text_store_path("test", b"bbb")


def test_text_store_path_name_sensitive():
    assert make_text_store_path("foo", b"content") != make_text_store_path("bar", b"content")


def test_text_store_path_references_order_independent():
    """References are sorted into the fingerprint."""
    a = make_text_store_path("x.drv", b"c", [TARBALL_OUT, BUSYBOX_OUT])
    b = make_text_store_path("x.drv", b"c", [BUSYBOX_OUT, TARBALL_OUT])
    assert a == b
    assert a != make_text_store_path("x.drv", b"c")


def test_fixed_output_recursive_matches_nix():
    """Recursive sha256 fetches are addressed like source imports."""
    path = make_fixed_output_path("busybox", "sha256", bytes.fromhex(BUSYBOX_SHA256), recursive=True)
    assert path == BUSYBOX_OUT


def test_fixed_output_flat_matches_nix():
    path = make_fixed_output_path("bootstrap-tools.tar.xz", "sha256", bytes.fromhex(TARBALL_SHA256))
    assert path == TARBALL_OUT


def test_output_path_suffix():
    """Non-out outputs get '-<output>' appended to the name."""
    h = sha256(b"drv")
    assert make_output_path(h, "out", "zlib-1.3.1").endswith("-zlib-1.3.1")
    assert make_output_path(h, "dev", "zlib-1.3.1").endswith("-zlib-1.3.1-dev")
    assert hash_part(make_output_path(h, "out", "z")) != hash_part(make_output_path(h, "dev", "z"))


class TestParse:
    def test_subpath(self):
        h, name = parse_store_path(BUSYBOX_OUT + "/bin/ash")
        assert name == "busybox"
        assert BUSYBOX_OUT.endswith(f"{h}-busybox")

    def test_rejects_non_store_path(self):
        with pytest.raises(ValueError, match="not a store path"):
            parse_store_path("/usr/bin/gcc")

    def test_rejects_invalid_hash_chars(self):
        """'e' is not in the nix base32 alphabet."""
        assert not is_store_path(STORE_DIR + "/" + "e" * 32 + "-nuked")

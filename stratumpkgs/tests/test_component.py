"""Tests for ComponentRef construction and identity."""

import pytest

from stratum.derivation import parse, serialize
from stratum.store_path import STORE_DIR, is_store_path
from stratumpkgs.component import Origin, OutputRef, derive

ORIGIN = Origin(1, "rebuild")


def _leaf(name="zlib-1.3.1", **kwargs):
    return derive("zlib", name, "/bin/sh", origin=ORIGIN, outputs=("out", "dev"), **kwargs)


def test_output_paths_are_store_paths():
    z = _leaf()
    assert set(z.outputs) == {"out", "dev"}
    assert all(is_store_path(p) for p in z.outputs.values())
    assert z.outputs["dev"].endswith("-zlib-1.3.1-dev")
    assert z.drv_path.startswith(STORE_DIR) and z.drv_path.endswith("-zlib-1.3.1.drv")


def test_env_carries_output_paths():
    z = _leaf()
    assert z.drv.env["out"] == z.out
    assert z.drv.env["dev"] == z.outputs["dev"]
    assert parse(serialize(z.drv)).env["out"] == z.out


def test_equal_but_not_identical():
    """Two derivations of the same thing compare equal; only inheritance gives identity."""
    a, b = _leaf(), _leaf()
    assert a == b
    assert hash(a) == hash(b)
    assert a is not b


def test_origin_does_not_affect_identity():
    a = _leaf()
    b = derive("zlib", "zlib-1.3.1", "/bin/sh", origin=Origin(4, "other"), outputs=("out", "dev"))
    assert a == b
    assert a.origin != b.origin


def test_input_changes_paths():
    dep1 = derive("a", "a", "/bin/sh", origin=ORIGIN, env={"v": "1"})
    dep2 = derive("a", "a", "/bin/sh", origin=ORIGIN, env={"v": "2"})
    assert _leaf(inputs=[dep1]) != _leaf(inputs=[dep2])
    assert _leaf(inputs=[dep1]).drv.input_drvs == {dep1.drv_path: ["out"]}


def test_inputs_deduplicated():
    dep = derive("a", "a", "/bin/sh", origin=ORIGIN)
    assert _leaf(inputs=[dep, dep]) == _leaf(inputs=[dep])


def test_references_per_output():
    dep = derive("a", "a", "/bin/sh", origin=ORIGIN, outputs=("out", "lib"))
    z = _leaf(references={"out": [dep.output("lib"), dep.output("lib")]}, inputs=[dep])
    assert z.references["out"] == (OutputRef(dep, "lib"),)
    assert z.references["dev"] == ()
    assert z.references["out"][0].path == dep.outputs["lib"]


def test_references_do_not_change_paths():
    """Runtime references are a property of the build result, not of the .drv."""
    dep = derive("a", "a", "/bin/sh", origin=ORIGIN)
    assert _leaf(inputs=[dep]) == _leaf(inputs=[dep], references={"out": [dep.output()]})


def test_fixed_output():
    f = derive("src", "src.tar.gz", "builtin:fetchurl", origin=ORIGIN, output_hash="ab" * 32)
    assert f.drv.outputs["out"].hash_algo == "sha256"
    assert f.drv.outputs["out"].hash_value == "ab" * 32


def test_fixed_output_single_output_only():
    with pytest.raises(ValueError, match="exactly one output"):
        derive("src", "src", "builtin:fetchurl", origin=ORIGIN, outputs=("out", "dev"),
               output_hash="ab" * 32)


def test_unknown_output():
    with pytest.raises(KeyError, match="no output 'lib'"):
        _leaf().output("lib")


def test_read_only():
    z = _leaf()
    with pytest.raises(AttributeError):
        z.name = "other"
    with pytest.raises(TypeError):
        z.outputs["out"] = "/tmp/x"


def test_derivation_is_a_copy():
    z = _leaf()
    z.drv.env["out"] = "/tmp/x"
    z.drv.outputs.clear()
    assert z.drv.env["out"] == z.out
    assert set(z.drv.outputs) == {"out", "dev"}
    assert serialize(z.drv) == z.drv_text


def test_origin_str():
    assert str(Origin(3, "static")) == "stage3:static"

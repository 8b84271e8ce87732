"""Tests for the stratum command line."""

import json

import pytest

from stratum.main import main
from stratum.store_path import make_text_store_path


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the user's config file and environment out of the tests."""
    monkeypatch.setenv("STRATUM_CONFIG", str(tmp_path / "no-config.json"))
    for var in ("STRATUM_MAX_WORKERS", "STRATUM_ENFORCE_PURITY", "STRATUM_SEED_TABLE", "STRATUM_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)


def _run(capsys, *argv):
    main(list(argv))
    return capsys.readouterr().out


def test_no_command(capsys):
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 1


def test_resolve_seed(capsys):
    info = json.loads(_run(capsys, "resolve-seed"))
    assert info["system"] == "x86_64-linux"
    assert info["bootstrapTools"]["url"].endswith("/bootstrap-tools.tar.xz")


def test_resolve_seed_unsupported(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["resolve-seed", "--system", "aarch64-linux"])
    assert exc.value.code == 1
    assert "error: no compatible seed bundle for aarch64-linux/glibc" in capsys.readouterr().err


def test_bootstrap_json(capsys):
    summary = json.loads(_run(capsys, "bootstrap", "--json", "--workers", "4"))
    assert summary["audit"]["ok"] is True
    assert summary["audit"]["violations"] == []
    assert [s["index"] for s in summary["stages"]] == [-1, 0, 1, 2, 3, 4, 5]
    assert set(summary["toolchain"]["exports"]) == {"libidn2", "gnumake"}
    assert summary["toolchain"]["stdenv"].endswith("-stdenv-linux.drv")


def test_bootstrap_emit_and_drv_show(tmp_path, capsys):
    out = tmp_path / "drvs"
    text = _run(capsys, "bootstrap", "--emit", str(out))
    assert "0 violation(s)" in text
    drvs = sorted(out.glob("*.drv"))
    assert drvs
    stdenv = next(p for p in drvs if p.name.endswith("-stdenv-linux.drv")
                  and "bootstrap-stage" not in p.name)
    info = json.loads(_run(capsys, "drv-show", str(stdenv)))
    assert info["env"]["name"] == "stdenv-linux"
    assert info["env"]["disallowedRequisites"]


def test_show_stage(capsys):
    text = _run(capsys, "show-stage", "5")
    rebuilt = {line.split()[1] for line in text.splitlines() if line.startswith("*")}
    assert rebuilt == {"libidn2", "gnumake", "stdenv"}


def test_show_unknown_stage(capsys):
    with pytest.raises(SystemExit):
        main(["show-stage", "9"])
    assert "no stage 9" in capsys.readouterr().err


def test_scan_and_nuke_refs(tmp_path, capsys):
    libc = make_text_store_path("glibc-2.40", b"libc")
    seed = make_text_store_path("bootstrap-tools", b"seed")
    lib = tmp_path / "libfoo.so.1.0"
    lib.write_bytes(f"\x00{libc}/lib\x00{seed}/lib\x00".encode())

    assert _run(capsys, "scan-refs", str(lib)).split() == sorted([libc, seed])
    assert _run(capsys, "scan-refs", str(lib), seed).split() == [seed]
    assert _run(capsys, "nuke-refs", str(lib), "-e", libc).split() == [str(lib)]
    assert _run(capsys, "scan-refs", str(lib)).split() == [libc]


@pytest.mark.parametrize("content", ['{"max_workers": "4"}', '["max_workers"]'])
def test_bad_config_file(tmp_path, capsys, content):
    config = tmp_path / "config.json"
    config.write_text(content)
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(config), "resolve-seed"])
    assert exc.value.code == 1
    assert capsys.readouterr().err.startswith("error: ")


def test_drv_show_truncated(tmp_path, capsys):
    drv = tmp_path / "broken.drv"
    drv.write_text('Derive([("out","/nix/store/x\\')
    with pytest.raises(SystemExit) as exc:
        main(["drv-show", str(drv)])
    assert exc.value.code == 1
    assert "error: expected escaped character" in capsys.readouterr().err

"""Tests for the closure auditor."""

import pytest

from stratum.store_path import make_text_store_path
from stratumpkgs.bootstrap import audit, audit_components, closure, run_chain
from stratumpkgs.bootstrap.closure import audit_tree
from stratumpkgs.component import Origin, derive
from stratumpkgs.errors import AuditFailure, PurityViolation, UnlistedReference
from stratumpkgs.platform import PlatformDescriptor


def _c(key, stage=1, refs=(), outputs=("out",)):
    return derive(key, key, "/bin/sh", origin=Origin(stage, "test"), outputs=outputs,
                  references={o: [r.output() for r in refs] for o in outputs})


@pytest.fixture
def graph():
    seed = _c("bootstrap-tools", stage=-1)
    placeholder = _c("glibc-placeholder", stage=0, refs=[seed])
    libc = _c("glibc", stage=2)
    zlib = _c("zlib", stage=3, refs=[libc])
    gcc = _c("gcc", stage=3, refs=[zlib, libc])
    tainted = _c("libidn2", stage=2, refs=[placeholder])
    return {"seed": seed, "placeholder": placeholder, "libc": libc, "zlib": zlib,
            "gcc": gcc, "tainted": tainted}


class TestClosure:
    def test_reachable_with_shortest_path(self, graph):
        paths = closure([graph["gcc"]])
        assert set(r.component for r in paths) == {graph["gcc"], graph["zlib"], graph["libc"]}
        assert paths[graph["libc"].output()] == (graph["gcc"].output(), graph["libc"].output())

    def test_every_root_output(self):
        lib = _c("lib")
        multi = _c("multi", refs=[lib], outputs=("out", "dev"))
        paths = closure([multi])
        assert multi.output("dev") in paths
        assert lib.output() in paths

    def test_only_referenced_outputs_followed(self):
        glibc = _c("glibc", outputs=("out", "bin"))
        user = _c("user", refs=[glibc])
        assert glibc.output("bin") not in closure([user])


class TestAudit:
    def test_clean(self, graph):
        allowed = [graph["gcc"], graph["zlib"], graph["libc"]]
        report = audit_components([graph["gcc"]], allowed, [graph["seed"]], 5)
        assert report.ok
        assert report.checked == 3
        report.raise_for_status()

    def test_forbidden_reachable(self, graph):
        root = _c("stdenv", stage=5, refs=[graph["gcc"], graph["tainted"]])
        allowed = [graph[k] for k in ("gcc", "zlib", "libc", "tainted", "placeholder")]
        report = audit_components([root], allowed, [graph["seed"]], 5)
        assert not report.ok
        (v,) = report.violations
        assert isinstance(v, PurityViolation)
        assert v.reference == graph["seed"].out
        assert v.path == (root.out, graph["tainted"].out, graph["placeholder"].out, graph["seed"].out)
        with pytest.raises(PurityViolation, match="forbidden reference"):
            report.raise_for_status()

    def test_unlisted(self, graph):
        report = audit_components([graph["gcc"]], [graph["gcc"], graph["libc"]], [], 5)
        (v,) = report.violations
        assert isinstance(v, UnlistedReference)
        assert v.reference == graph["zlib"].out
        assert isinstance(v, AuditFailure)

    def test_terminal_stage_needs_no_listing(self, graph):
        root = _c("stdenv", stage=5, refs=[graph["libc"]])
        assert audit_components([root], [graph["libc"]], [], 5).ok

    def test_no_allowed_set_checks_forbidden_only(self, graph):
        assert audit_components([graph["gcc"]], None, [graph["seed"]], 5).ok
        report = audit_components([graph["tainted"]], None, [graph["seed"]], 5)
        assert isinstance(report.violations[0], PurityViolation)


@pytest.fixture(scope="module")
def stages():
    return run_chain(PlatformDescriptor("x86_64"))


class TestChainAudit:
    def test_stage1_toolchain_reaches_seed(self, stages):
        """Stage1 still compiles with the seed's gcc, so auditing it fails."""
        seeds = [stages[0][k] for k in stages[0].packages]
        report = audit(stages[2].toolchain, forbidden=seeds)
        assert not report.ok
        assert all(isinstance(v, PurityViolation) for v in report.violations)
        assert stages[0]["bootstrap-tools"].out in {v.reference for v in report.violations}

    def test_removing_zlib_from_allowed(self, stages):
        final = stages[-1].toolchain
        zlib = stages[-1]["zlib"]
        report = audit(final, allowed=final.allowed_requisites - {zlib})
        assert [type(v) for v in report.violations] == [UnlistedReference]
        v = report.violations[0]
        assert v.reference == zlib.out
        assert v.path[-2] == stages[-1]["gcc-unwrapped"].out
        assert v.path[-1] == zlib.out


class TestTree:
    def _store(self, tmp_path, name, content=b""):
        path = make_text_store_path(name, name.encode())
        local = tmp_path / path.lstrip("/")
        local.mkdir(parents=True)
        (local / "data").write_bytes(content)
        return path, local

    def test_clean_tree(self, tmp_path):
        libc, _ = self._store(tmp_path, "glibc")
        _, tree = self._store(tmp_path, "hello", f"{libc}/lib/libc.so.6".encode())
        assert audit_tree([tree], allowed=[libc]) == []

    def test_forbidden_and_unlisted(self, tmp_path):
        libc, _ = self._store(tmp_path, "glibc")
        seed, _ = self._store(tmp_path, "bootstrap-tools")
        stray, _ = self._store(tmp_path, "stray")
        _, tree = self._store(tmp_path, "hello", f"{libc}:{seed}:{stray}".encode())
        bad = audit_tree([tree], allowed=[libc, seed], forbidden=[seed])
        assert sorted(bad) == sorted([(str(tree), seed), (str(tree), stray)])

"""End-to-end tests of the full bootstrap chain."""

import pytest

from stratum.config import StratumConfig
from stratumpkgs.bootstrap import audit, bootstrap, run_chain
from stratumpkgs.bootstrap.chain import options_from_config
from stratumpkgs.bootstrap.plans import GNU_CONFIG, GNU_CONFIG_HOOK, default_plans
from stratumpkgs.component import SEED_STAGE, Origin
from stratumpkgs.errors import BuildError, UnsupportedPlatform
from stratumpkgs.platform import PlatformDescriptor
from stratumpkgs.policy import Inherit, OverridePolicy, rebuild
from stratumpkgs.seeds import SEED_KEYS, SeedBundle

X86_64 = PlatformDescriptor("x86_64")


@pytest.fixture(scope="module")
def stages():
    return run_chain(X86_64)


@pytest.fixture(scope="module")
def final(stages):
    return stages[-1].toolchain


class TestChain:
    def test_stage_order(self, stages):
        assert [s.index for s in stages] == [SEED_STAGE, 0, 1, 2, 3, 4, 5]
        assert stages[-1].name == "final"

    def test_terminal_closure_is_clean(self, final):
        report = audit(final)
        assert report.ok, [str(v) for v in report.violations]
        seeds = set(final.disallowed_requisites)
        assert not report.components() & seeds

    def test_bootstrap_returns_audited_toolchain(self, final):
        tc = bootstrap(X86_64)
        assert tc.cc == final.cc
        assert tc.stdenv == final.stdenv

    def test_final_compiler_provenance(self, final):
        assert final.compiler.origin == Origin(3, "static-libraries")
        assert final.cc.origin == Origin(4, "final-wrapper")
        assert final.stdenv.origin == Origin(5, "stdenv")
        assert final.stdenv.name == "stdenv-linux"

    def test_requisite_sets(self, stages, final):
        assert final.disallowed_requisites == frozenset(stages[0][k] for k in SEED_KEYS)
        assert stages[4]["zlib"] in final.allowed_requisites
        assert stages[4]["glibc"] in final.allowed_requisites
        assert final.stdenv.drv.env["disallowedRequisites"].split() == sorted(
            c.out for c in final.disallowed_requisites)

    def test_exports(self, stages, final):
        assert final.exports["libidn2"] is stages[-1]["libidn2"]
        assert final.exports["gnumake"] is stages[-1]["gnumake"]
        assert stages[-1]["libidn2"] in final.roots()

    def test_deterministic(self, stages):
        again = run_chain(X86_64)
        assert again[-1].toolchain.stdenv == stages[-1].toolchain.stdenv
        assert again[-1]["libidn2"] == stages[-1]["libidn2"]


class TestStages:
    def test_inherited_by_reference(self, stages):
        s1, s2, s3 = stages[2], stages[3], stages[4]
        assert s3["perl"] is s1["perl"]
        assert s2["gnum4"] is s1["gnum4"]
        assert stages[6]["zlib"] is s3["zlib"]

    def test_stage_names(self, stages):
        assert stages[2]["stdenv"].name == "bootstrap-stage1-stdenv-linux"
        assert stages[2].toolchain.cc.name == "bootstrap-stage1-gcc-wrapper"

    def test_stage1_still_seeded(self, stages):
        s1 = stages[2]
        assert s1.toolchain.compiler is stages[0]["bootstrap-tools"]
        assert s1.toolchain.libc.origin == Origin(0, "placeholder")

    def test_stage2_libc_and_linker(self, stages):
        s1, s2 = stages[2], stages[3]
        glibc = s2["glibc"]
        assert glibc.origin == Origin(2, "rebuild")
        assert set(glibc.outputs) == {"out", "dev", "bin"}
        assert {r.component for r in glibc.references["out"]} == {s2["libidn2"], s2["linux-headers"]}

        ld = s2["binutils-unwrapped"]
        assert ld.origin == Origin(2, "rehome-linker")
        assert ld.passthru["source"] is s1["binutils-unwrapped"]
        assert glibc.output() in ld.references["out"]
        assert s2["binutils"].passthru["bintools"] is ld
        assert s2["binutils"].passthru["libc"] is glibc

    def test_stage2_nuked_libraries(self, stages):
        s2 = stages[3]
        placeholder = stages[1]["glibc"]
        assert s2["libunistring"].references["out"] == ()
        assert s2["libidn2"].references["out"] == (s2["libunistring"].output(),)
        # only out is nuked; bin still points at the placeholder
        assert placeholder.output() in s2["libidn2"].references["bin"]

    def test_stage3_static_libraries(self, stages):
        s3 = stages[4]
        gcc = s3["gcc-unwrapped"]
        static = [s3[f"{lib}-stage3"] for lib in ("gmp", "mpfr", "libmpc", "isl")]
        assert all(s.static for s in static)
        assert s3["gmp-stage3"].name == "gmp-stage3-6.3.0"
        for s in static:
            assert s.out in gcc.drv.env["buildInputs"]
            assert s.output() not in gcc.references["out"]
        assert {r.component for r in gcc.references["out"]} == {s3["zlib"], s3["glibc"]}

    def test_static_library_links_static_deps_only(self, stages):
        s3 = stages[4]
        assert s3["mpfr-stage3"].references["out"] == ()
        assert s3["gmp-stage3"].drv_path in s3["mpfr-stage3"].drv.input_drvs

    def test_stage4_make_in_bootstrap(self, stages):
        make = stages[5]["gnumake"]
        assert make.origin == Origin(4, "in-bootstrap")
        assert make.drv.env["inBootstrap"] == "1"

    def test_stage4_wrapper_uses_stage3_compiler(self, stages):
        s3, s4 = stages[4], stages[5]
        gcc = s4["gcc"]
        assert gcc.passthru["compiler"] is s3["gcc-unwrapped"]
        assert gcc.passthru["bintools"] is s4["binutils"]
        assert s4["bash"].output() in gcc.references["out"]

    def test_stage4_unpacks_with_stage3_xz(self, stages):
        s3, s4 = stages[4], stages[5]
        assert s3["xz"].origin == Origin(3, "rebuild")
        assert s4.toolchain.extra_native == (s3["patchelf"], s3["xz"])
        assert s3["xz"].out in s4["stdenv"].drv.env["defaultNativeBuildInputs"]
        assert s4["xz"] is not s3["xz"]

    def test_final_libidn2_pruned(self, stages):
        s4, s5 = stages[5], stages[6]
        idn2 = s5["libidn2"]
        placeholder = stages[1]["glibc"]
        assert idn2.origin == Origin(5, "no-bootstrap-reference")
        assert idn2.passthru["phase1"].origin == Origin(5, "no-bootstrap-reference:phase1")
        assert idn2.passthru["source"] is s4["libidn2"]
        for o in ("bin", "dev", "out"):
            assert placeholder.output() not in idn2.references[o]
            assert {r.component for r in idn2.references[o]} <= {s4["libidn2"], s4["libunistring"]}

    def test_final_make_out_of_bootstrap(self, stages):
        make = stages[6]["gnumake"]
        assert make.origin == Origin(5, "out-of-bootstrap")
        assert make.drv.env["inBootstrap"] == ""

    def test_final_shim(self, stages, final):
        glibc = stages[6]["glibc"]
        argv = final.shim.argv(["-c", "hello.c"])
        assert f"-B{glibc.out}/lib/" in argv
        assert not any(a.startswith("-Wl,-dynamic-linker") for a in argv)


class TestOptions:
    def test_unsupported_platform(self):
        with pytest.raises(UnsupportedPlatform):
            run_chain(PlatformDescriptor("aarch64"))
        with pytest.raises(UnsupportedPlatform):
            run_chain(PlatformDescriptor("x86_64", libc="musl"))

    def test_user_override_inherits_make(self):
        custom = run_chain(X86_64, user_overrides={5: {"gnumake": Inherit()}})
        assert custom[-1]["gnumake"] is custom[-2]["gnumake"]
        assert custom[-1].toolchain.exports["gnumake"].origin == Origin(4, "in-bootstrap")
        assert audit(custom[-1].toolchain).ok

    def test_user_override_missing_input(self):
        guile_make = rebuild(OverridePolicy("guile", {"inBootstrap": False, "guileSupport": True}))
        with pytest.raises(BuildError) as exc:
            run_chain(X86_64, user_overrides={4: {"gnumake": guile_make}})
        assert exc.value.component == "gnumake"
        assert exc.value.stage == 4

    def test_unknown_stage_override(self):
        with pytest.raises(ValueError, match="no stage"):
            run_chain(X86_64, user_overrides={9: {}})

    def test_unknown_stage_override_with_explicit_plans(self):
        with pytest.raises(ValueError, match=r"no stage\(s\) \[9\]"):
            run_chain(X86_64, plans=default_plans(X86_64), user_overrides={9: {"gnumake": Inherit()}})

    def test_explicit_plans_take_user_overrides(self):
        custom = run_chain(X86_64, plans=default_plans(X86_64),
                           user_overrides={5: {"gnumake": Inherit()}})
        assert custom[-1]["gnumake"] is custom[-2]["gnumake"]

    def test_options_from_config(self):
        options = options_from_config(StratumConfig(max_workers=3, enforce_purity=False))
        assert options["max_workers"] == 3
        assert options["wrapper_policy"].enforce_purity is False
        assert "table" not in options

    def test_purity_policy_reaches_final_shim(self):
        options = options_from_config(StratumConfig(enforce_purity=False))
        tc = run_chain(X86_64, **options)[-1].toolchain
        assert tc.shim.filter_args(["-I/usr/include"]) == ["-I/usr/include"]
        assert tc.cc.drv.env["NIX_ENFORCE_PURITY"] == ""


AARCH64 = PlatformDescriptor("aarch64")
AARCH64_SEEDS = {"glibc": {"aarch64-linux": SeedBundle(
    "aarch64-linux", "glibc",
    "http://seeds/aarch64-linux/busybox", "00" * 32,
    "http://seeds/aarch64-linux/bootstrap-tools.tar.xz", "11" * 32,
)}}


@pytest.fixture(scope="module")
def aarch64_stages():
    return run_chain(AARCH64, table=AARCH64_SEEDS)


class TestGnuConfigHook:
    def test_not_used_on_x86_64_glibc(self, stages):
        assert all(GNU_CONFIG_HOOK not in s for s in stages)

    def test_used_from_stage3_on_aarch64(self, aarch64_stages):
        s1, s2, s3, s4, s5 = aarch64_stages[2:]
        assert GNU_CONFIG_HOOK not in s1
        assert s2.toolchain.extra_native == ()
        assert s3.toolchain.extra_native == (s2["patchelf"], s2[GNU_CONFIG_HOOK])
        assert s4.toolchain.extra_native == (s3["patchelf"], s3["xz"], s3[GNU_CONFIG_HOOK])
        assert s5.toolchain.extra_native == (s4["patchelf"], s4[GNU_CONFIG_HOOK])

    def test_rebuilt_by_the_stage_before_each_user(self, aarch64_stages):
        for stage in aarch64_stages[3:6]:
            hook = stage[GNU_CONFIG_HOOK]
            assert hook.origin == Origin(stage.index, "rebuild")
            assert hook.references["out"] == (stage[GNU_CONFIG].output(),)
        assert aarch64_stages[-1][GNU_CONFIG_HOOK] is aarch64_stages[-2][GNU_CONFIG_HOOK]

    def test_aarch64_terminal_audit(self, aarch64_stages):
        s4, final = aarch64_stages[5], aarch64_stages[-1].toolchain
        assert {s4[GNU_CONFIG_HOOK], s4[GNU_CONFIG]} <= final.allowed_requisites
        report = audit(final)
        assert report.ok, [str(v) for v in report.violations]
        assert s4[GNU_CONFIG] in report.components()
        assert final.shim.dynamic_linker.endswith("/lib/ld-linux-aarch64.so.1")

    def test_riscv_needs_it_from_stage2(self):
        plans = default_plans(PlatformDescriptor("riscv64"))
        assert GNU_CONFIG_HOOK in plans[1].overrides
        assert plans[2].extra_native_build_inputs == (GNU_CONFIG_HOOK,)

    def test_musl_needs_it_on_x86_64(self):
        plans = default_plans(PlatformDescriptor("x86_64", libc="musl"))
        assert GNU_CONFIG_HOOK not in plans[1].overrides
        assert GNU_CONFIG_HOOK in plans[2].overrides
        assert plans[3].extra_native_build_inputs == ("patchelf", GNU_CONFIG_HOOK)
        assert GNU_CONFIG in plans[5].allowed

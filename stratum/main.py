#!/usr/bin/env python3
"""stratum: staged toolchain bootstrap."""

import argparse
import json
import logging
import sys
from pathlib import Path

from stratum import derivation, refs
from stratum.config import StratumConfig
from stratumpkgs.bootstrap import audit, run_chain
from stratumpkgs.bootstrap.chain import options_from_config
from stratumpkgs.errors import BootstrapError
from stratumpkgs.platform import PlatformDescriptor
from stratumpkgs.seeds import DEFAULT_SEED_TABLE, load_seed_table, resolve_seed_bundle

logger = logging.getLogger("stratum")


def _platform(args) -> PlatformDescriptor:
    return PlatformDescriptor.parse(args.system, args.libc)


def _run(args):
    options = options_from_config(args.config)
    if getattr(args, "workers", None):
        options["max_workers"] = args.workers
    return run_chain(_platform(args), **options)


def cmd_resolve_seed(args):
    config = args.config
    table = load_seed_table(config.seed_table) if config.seed_table else DEFAULT_SEED_TABLE
    bundle = resolve_seed_bundle(_platform(args), table)
    json.dump({
        "system": bundle.system,
        "libc": bundle.libc,
        "busybox": {"url": bundle.busybox_url, "sha256": bundle.busybox_sha256},
        "bootstrapTools": {"url": bundle.tarball_url, "sha256": bundle.tarball_sha256},
    }, sys.stdout, indent=2)
    print()


def cmd_bootstrap(args):
    stages = _run(args)
    toolchain = stages[-1].toolchain
    report = audit(toolchain)

    if args.emit:
        out = Path(args.emit)
        out.mkdir(parents=True, exist_ok=True)
        written = 0
        for stage in stages:
            for ref in stage.rebuilt().values():
                (out / ref.drv_path.rsplit("/", 1)[1]).write_text(ref.drv_text)
                written += 1
        logger.info("wrote %d derivation(s) to %s", written, out)

    if args.json:
        json.dump({
            "stages": [
                {"index": s.index, "name": s.name,
                 "rebuilt": {k: v.drv_path for k, v in sorted(s.rebuilt().items())}}
                for s in stages
            ],
            "toolchain": {
                "compiler": toolchain.compiler.out if toolchain.compiler else None,
                "cc": toolchain.cc.out if toolchain.cc else None,
                "libc": toolchain.libc.out if toolchain.libc else None,
                "stdenv": toolchain.stdenv.drv_path,
                "exports": {k: v.out for k, v in toolchain.exports.items()},
            },
            "audit": {
                "ok": report.ok,
                "closure": len(report.closure),
                "violations": [str(v) for v in report.violations],
            },
        }, sys.stdout, indent=2)
        print()
    else:
        for s in stages:
            print(f"stage {s.index:>2} {s.name:<18} {len(s.rebuilt()):>3} rebuilt")
        print(f"stdenv: {toolchain.stdenv.drv_path}")
        print(f"closure: {len(report.closure)} output(s), "
              f"{len(report.violations)} violation(s)")
    report.raise_for_status()


def cmd_show_stage(args):
    stages = _run(args)
    by_index = {s.index: s for s in stages}
    if args.index not in by_index:
        raise BootstrapError(f"no stage {args.index}, have {sorted(by_index)}")
    stage = by_index[args.index]
    for key, ref in sorted(stage.packages.items()):
        mark = "*" if ref.origin.stage == stage.index else " "
        print(f"{mark} {key:<28} {str(ref.origin):<32} {ref.drv_path}")


def cmd_nuke_refs(args):
    changed = refs.nuke_references(args.path, exclude=args.exclude)
    for p in changed:
        print(p)


def cmd_scan_refs(args):
    found = (refs.scan_references(args.path, args.candidates) if args.candidates
             else refs.find_store_paths(args.path))
    for p in sorted(found):
        print(p)


def cmd_drv_show(args):
    text = open(args.drv_path).read()
    drv = derivation.parse(text)
    info = {
        "outputs": {k: {"path": v.path, "hashAlgo": v.hash_algo, "hash": v.hash_value} for k, v in drv.outputs.items()},
        "inputDrvs": drv.input_drvs,
        "inputSrcs": drv.input_srcs,
        "platform": drv.platform,
        "builder": drv.builder,
        "args": drv.args,
        "env": drv.env,
    }
    json.dump(info, sys.stdout, indent=2)
    print()


def _add_platform(p):
    p.add_argument("--system", default="x86_64-linux", help="<arch>-<kernel>")
    p.add_argument("--libc", default="glibc")


def main(argv=None):
    parser = argparse.ArgumentParser(prog="stratum", description="Staged toolchain bootstrap")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More logging (-vv for debug)")
    parser.add_argument("--config", type=Path, help="Config file (default: ~/.config/stratum/config.json)")
    sub = parser.add_subparsers(dest="command")

    # resolve-seed
    p = sub.add_parser("resolve-seed", help="Show the seed bundle for a platform")
    _add_platform(p)
    p.set_defaults(func=cmd_resolve_seed)

    # bootstrap
    p = sub.add_parser("bootstrap", help="Generate all stages and audit the result")
    _add_platform(p)
    p.add_argument("--json", action="store_true", help="Machine-readable summary")
    p.add_argument("--emit", metavar="DIR", help="Write every rebuilt .drv to DIR")
    p.add_argument("--workers", type=int, help="Parallel rebuilds per stage")
    p.set_defaults(func=cmd_bootstrap)

    # show-stage
    p = sub.add_parser("show-stage", help="List a stage's components (* = rebuilt there)")
    p.add_argument("index", type=int)
    _add_platform(p)
    p.set_defaults(func=cmd_show_stage)

    # nuke-refs
    p = sub.add_parser("nuke-refs", help="Strip store references from files in place")
    p.add_argument("path")
    p.add_argument("-e", dest="exclude", action="append", default=[],
                   help="Store path whose references survive")
    p.set_defaults(func=cmd_nuke_refs)

    # scan-refs
    p = sub.add_parser("scan-refs", help="List store paths referenced under a path")
    p.add_argument("path")
    p.add_argument("candidates", nargs="*", help="Only report these store paths")
    p.set_defaults(func=cmd_scan_refs)

    # drv-show
    p = sub.add_parser("drv-show", help="Show parsed .drv file as JSON")
    p.add_argument("drv_path")
    p.set_defaults(func=cmd_drv_show)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.config = StratumConfig.load(args.config)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    level = {0: args.config.log_level, 1: "INFO"}.get(args.verbose, "DEBUG")
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        args.func(args)
    except (BootstrapError, OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

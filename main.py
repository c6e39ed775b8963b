#!/usr/bin/env python3
"""
Stimulus set sampler
Main entry point, CLI wrapper for the Orchestrator
"""

import sys
import argparse
from pathlib import Path

from orchestrator import Orchestrator
from utils import ConfigLoader


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Draw stimulus sets that satisfy a battery of statistical constraints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py
  python main.py --items data/items.csv --basesets data/basesets.csv --testdefs data/testdefs.csv
  python main.py --estimate-only --trials 20000
  python main.py --workers 8 --chunk-length 5000 --seed 7
        """
    )

    parser.add_argument('--config', type=str, default='config.yaml', help='Path to configuration file')
    parser.add_argument('--items', type=str, default=None, help='Item attribute table CSV')
    parser.add_argument('--basesets', type=str, default=None, help='Base set definitions CSV')
    parser.add_argument('--testdefs', type=str, default=None, help='Test definitions CSV')
    parser.add_argument('--trials', type=int, default=None, help='Number of exploration trials')
    parser.add_argument('--workers', type=int, default=None, help='Concurrent workers per round')
    parser.add_argument('--chunk-length', type=int, default=None, help='Attempts per worker per round')
    parser.add_argument('--max-rounds', type=int, default=None, help='Give up after this many rounds')
    parser.add_argument('--executor', choices=['thread', 'process'], default=None, help='Worker pool type')
    parser.add_argument('--seed', type=int, default=None, help='Seed for reproducible runs')
    parser.add_argument('--estimate-only', action='store_true', help='Stop after the feasibility estimate')
    return parser


def apply_overrides(config, args):
    """Command-line values take precedence over config.yaml."""
    feas = config.setdefault("feasibility", {}) or {}
    search = config.setdefault("search", {}) or {}
    config["feasibility"], config["search"] = feas, search

    if args.trials is not None:
        feas["n_trials"] = args.trials
    if args.workers is not None:
        search["workers"] = args.workers
    if args.chunk_length is not None:
        search["chunk_length"] = args.chunk_length
    if args.max_rounds is not None:
        search["max_rounds"] = args.max_rounds
    if args.executor is not None:
        search["executor"] = args.executor
    if args.seed is not None:
        feas["seed"] = args.seed
        search["seed"] = args.seed
    return config


def print_progress(stage: str, fraction: float):
    print(f"\r  {stage:<12} {fraction:6.1%}", end="" if fraction < 1.0 else "\n", flush=True)


def main(argv=None):
    """Main execution function"""
    args = build_parser().parse_args(argv)

    print("=" * 80)
    print(" STIMULUS SET SAMPLER ")
    print("=" * 80)
    print()

    cfg_path = Path(args.config)
    if not cfg_path.exists():
        print(f"✗ ERROR: Config file not found: {cfg_path}")
        return 1

    for label, value in (("Items", args.items), ("Base sets", args.basesets), ("Test definitions", args.testdefs)):
        if value and not Path(value).exists():
            print(f"✗ ERROR: {label} file not found: {value}")
            return 1

    try:
        config = apply_overrides(ConfigLoader.load(str(cfg_path)), args)
        orchestrator = Orchestrator(str(cfg_path), config=config)

        try:
            result = orchestrator.run(
                items_csv=args.items,
                basesets_csv=args.basesets,
                testdefs_csv=args.testdefs,
                estimate_only=args.estimate_only,
                progress=print_progress,
            )
        finally:
            orchestrator.close()

        print()
        print("=" * 80)

        if not result.get("success", False):
            print("✗ SELECTION FAILED")
            print("=" * 80)
            print()
            errs = result.get("errors", [])
            if not errs:
                print("No error reason provided.")
            else:
                print("Errors:")
                for e in errs:
                    print(f"  - {e}")
            print()
            return 1

        run_dir = str(result["run_dir"])
        feas = result.get("feasibility", {})

        print("✓ ESTIMATE COMPLETE" if args.estimate_only else "✓ YOUR SET IS READY")
        print("=" * 80)
        print()
        print(f"Run ID: {result['run_id']}")
        print(f"Output Directory: {run_dir}")
        print()
        for w in result.get("warnings", []):
            print(f"  ! {w}")
        print(f"Joint probability: {feas.get('joint_probability', 0.0):.3g}")
        print(f"Expected draws:    {feas.get('expected_trials')}")
        if feas.get("used_laplace"):
            print("  (Laplace smoothing applied; estimate is conservative)")

        if not args.estimate_only:
            search = result.get("search", {})
            print(f"Rounds: {search.get('rounds')}  Attempts: {search.get('attempts')}")
            print(f"Tests passed: {result.get('constraints_passed')}/{result.get('constraints_total')}")
            print()
            print("Output Files:")
            for path in result.get("set_files", []):
                print(f"  - {path}")
            if result.get("item_table_file"):
                print(f"  - {result['item_table_file']}")
            print(f"  - {run_dir}/reports/statistics.json")
            print(f"  - {run_dir}/reports/report.md")
        print()
        return 0

    except KeyboardInterrupt:
        print("\n\nSearch interrupted by user.")
        return 130

    except Exception as e:
        print(f"\n✗ Fatal Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import typing as t
from pathlib import Path

import dotenv

from ._types import Console
from .blobstore import build_blob_store
from .changes import DEFAULT_WATCHED_PATHS, changed_paths_between, should_regenerate
from .config import PipelineConfig
from .errors import Outcome
from .handoff import HandoffStore
from .models import PipelineRun
from .naming import short_commit, slugify_ref
from .pipeline import StageReport, regenerate_snapshot, run_from_snapshot
from .providers import build_provider

EXIT_CODES: dict[Outcome, int] = {
    Outcome.SUCCESS: 0,
    Outcome.SKIPPED: 0,
    Outcome.FATAL: 1,
    Outcome.RECOVERABLE: 3,
}


def write_step_output(name: str, value: str, env: t.Mapping[str, str] | None = None) -> None:
    """Append ``name=value`` to ``$GITHUB_OUTPUT`` when running under Actions."""
    target = (os.environ if env is None else env).get("GITHUB_OUTPUT")
    if not target:
        return
    with Path(target).open("a", encoding="utf-8") as handle:
        handle.write(f"{name}={value}\n")


def _add_change_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--base", help="Base revision for the changed-files diff")
    parser.add_argument("--head", default="HEAD", help="Head revision (default: HEAD)")
    parser.add_argument(
        "--changed",
        nargs="*",
        metavar="PATH",
        help="Changed paths, instead of diffing --base..--head",
    )
    parser.add_argument(
        "--watch",
        action="append",
        metavar="GLOB",
        help="Watched state-format path or glob (repeatable; defaults to zebra-state format files)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Regenerate even when no watched file changed",
    )
    parser.add_argument(
        "--repo-root",
        default=".",
        help="Repository to diff (default: current directory)",
    )


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--run-id",
        default=os.environ.get("GITHUB_RUN_ID"),
        help="CI run id (default: $GITHUB_RUN_ID)",
    )
    parser.add_argument(
        "--ref",
        default=os.environ.get("GITHUB_HEAD_REF") or os.environ.get("GITHUB_REF"),
        help="Git ref being tested (default: $GITHUB_HEAD_REF or $GITHUB_REF)",
    )
    parser.add_argument(
        "--commit",
        default=os.environ.get("GITHUB_SHA"),
        help="Commit being tested (default: $GITHUB_SHA)",
    )
    parser.add_argument("--network", help="Network to sync (default: Mainnet)")
    parser.add_argument(
        "--deadline",
        type=float,
        help="Seconds before the whole stage is abandoned",
    )
    parser.add_argument(
        "--provider",
        choices=("gce", "morph"),
        help="Compute provider (default: $SNAPSHOT_CI_PROVIDER or gce)",
    )
    parser.add_argument(
        "--handoff-store",
        help="Handoff artifact store: a directory, file:// or gs:// URI",
    )


def parse_args(argv: t.Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="snapshot-ci",
        description="Regenerate and consume cached state disk snapshots in CI",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only print stage results and remote output summaries",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    decide = subparsers.add_parser(
        "decide", help="Decide whether the cached state must be regenerated"
    )
    _add_change_arguments(decide)

    regenerate = subparsers.add_parser(
        "regenerate", help="Regenerate the state snapshot and publish its commit"
    )
    _add_run_arguments(regenerate)
    _add_change_arguments(regenerate)

    consume = subparsers.add_parser(
        "consume", help="Run the consuming test from the published state snapshot"
    )
    _add_run_arguments(consume)

    return parser.parse_args(argv)


def decide_regeneration(args: argparse.Namespace, console: Console) -> bool:
    if args.force:
        console.info("Regeneration forced")
        return True
    if args.changed is not None:
        changed = list(args.changed)
    elif args.base:
        changed = changed_paths_between(args.base, args.head, args.repo_root)
    else:
        raise SystemExit("error: pass --changed, --base or --force")
    watched = tuple(args.watch) if args.watch else DEFAULT_WATCHED_PATHS
    decision = should_regenerate(changed, watched)
    console.info(
        f"{len(changed)} changed paths; state format "
        + ("changed" if decision else "unchanged")
    )
    return decision


def _build_run(args: argparse.Namespace, config: PipelineConfig) -> PipelineRun:
    missing = [
        flag
        for flag, value in (("--run-id", args.run_id), ("--ref", args.ref), ("--commit", args.commit))
        if not value
    ]
    if missing:
        raise SystemExit(f"error: missing {', '.join(missing)}")
    return PipelineRun(
        run_id=str(args.run_id),
        ref_slug=slugify_ref(args.ref),
        commit=short_commit(args.commit),
        network=args.network or config.default_network,
    )


def _build_handoff(config: PipelineConfig, console: Console) -> HandoffStore:
    return HandoffStore(
        build_blob_store(config.handoff_store),
        console,
        workflow=config.workflow,
        artifact=config.artifact_name,
        retention_days=config.handoff_retention_days,
    )


async def _run(args: argparse.Namespace, console: Console) -> StageReport:
    config = PipelineConfig.from_env().with_overrides(
        provider=args.provider, handoff_store=args.handoff_store
    )
    run = _build_run(args, config)
    regenerate = decide_regeneration(args, console) if args.command == "regenerate" else True
    provider = build_provider(config, console)
    handoff = _build_handoff(config, console)
    if args.command == "regenerate":
        return await regenerate_snapshot(
            run,
            config,
            provider,
            handoff,
            regenerate=regenerate,
            deadline=args.deadline,
            console=console,
        )
    return await run_from_snapshot(
        run, config, provider, handoff, deadline=args.deadline, console=console
    )


def main(argv: t.Sequence[str] | None = None) -> int:
    dotenv.load_dotenv()
    args = parse_args(argv)
    console = Console(quiet=args.quiet)

    if args.command == "decide":
        decision = decide_regeneration(args, console)
        value = "true" if decision else "false"
        console.always(f"regenerate={value}")
        write_step_output("regenerate", value)
        return 0

    report = asyncio.run(_run(args, console))
    if report.teardown is not None:
        console.warn(str(report.teardown))
    if report.preserved:
        console.warn(f"instance {report.preserved} was preserved after the deadline")
    if args.command == "regenerate" and report.outcome is Outcome.SUCCESS and report.commit:
        write_step_output("disk_short_sha", report.commit)
    return EXIT_CODES[report.outcome]


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import asyncio
import time
import uuid
from dataclasses import dataclass

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from blocklist_sync.app import BlocklistSync, build_app
from blocklist_sync.core import bind, clear_bindings, configure_logging, get_logger, load_settings
from blocklist_sync.models import ArtifactClass, FreshnessOutcome

console = Console()


@dataclass(frozen=True, slots=True)
class _CommonArgs:
    cmd: str
    artifact_class: ArtifactClass
    force: bool
    wait: bool
    timeout: float | None


def _add_class_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--class",
        dest="artifact_class",
        choices=[c.value for c in ArtifactClass],
        default=ArtifactClass.LOCAL.value,
        help="Artifact class to operate on (default: local).",
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="blocklist-sync")
    sub = p.add_subparsers(dest="cmd", required=True)

    commands: dict[str, str] = {
        "check": "Ask the update authority whether a newer blocklist is published",
        "download": "Start a download pipeline when a newer blocklist exists",
        "cancel": "Cancel the active download pipeline",
        "status": "Show installed timestamps and pending jobs",
        "resume": "Run pending jobs left by an earlier process until idle",
        "run": "Check, download and install in the foreground",
    }

    for cmd, help_text in commands.items():
        sp = sub.add_parser(cmd, help=help_text)
        _add_class_arg(sp)
        if cmd in ("download", "run"):
            sp.add_argument(
                "--force",
                action="store_true",
                help="Download even when the published version is not newer.",
            )
        if cmd == "download":
            sp.add_argument(
                "--wait",
                action="store_true",
                help="Process the pipeline in this process and wait for its outcome.",
            )
        if cmd in ("download", "run", "resume"):
            sp.add_argument(
                "--timeout",
                type=float,
                default=None,
                help="Seconds to wait for the pipeline (default: watch timeout).",
            )

    return p


def _common(args: argparse.Namespace) -> _CommonArgs:
    return _CommonArgs(
        cmd=str(args.cmd),
        artifact_class=ArtifactClass(args.artifact_class),
        force=bool(getattr(args, "force", False)),
        wait=bool(getattr(args, "wait", False)),
        timeout=getattr(args, "timeout", None),
    )


def _outcome_style(outcome: FreshnessOutcome | None) -> str:
    if outcome is FreshnessOutcome.SUCCESS:
        return "[green]success[/green]"
    if outcome is FreshnessOutcome.NOT_REQUIRED:
        return "[cyan]not required[/cyan]"
    if outcome is None:
        return "[yellow]timed out[/yellow]"
    return f"[red]{outcome.name.lower()}[/red]"


def _wait_for_pipeline(app: BlocklistSync, common: _CommonArgs) -> FreshnessOutcome | None:
    timeout = common.timeout if common.timeout is not None else app.settings.watch_timeout_s
    publisher = app.download_status[common.artifact_class]
    deadline = time.monotonic() + timeout
    app.scheduler.start()
    with console.status(f"[bold]{common.artifact_class.value} pipeline[/]", spinner="dots"):
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            outcome = publisher.wait_for_terminal(min(1.0, remaining), include_current=True)
            if outcome is not None:
                return outcome
            if not app.orchestrator.is_active(common.artifact_class):
                # the pipeline ended without completing here, e.g. cancelled by another process
                current = publisher.value
                return current if current.is_terminal() else FreshnessOutcome.FAILURE


async def _dispatch(app: BlocklistSync, common: _CommonArgs) -> int:
    cls = common.artifact_class
    tbl = Table(title="Result", show_header=False, box=None)

    if common.cmd == "check":
        outcome = await app.check(cls)
        tbl.add_row("check", _outcome_style(outcome))
        tbl.add_row("newest", str(app.store.get_newest(cls)))
        console.print(tbl)
        return 1 if outcome is FreshnessOutcome.FAILURE else 0

    if common.cmd == "cancel":
        cancelled = app.cancel(cls)
        tbl.add_row("cancelled", "[green]yes[/green]" if cancelled else "nothing active")
        console.print(tbl)
        return 0

    if common.cmd == "status":
        st = app.status()
        state = Table(title="Timestamps", show_header=True)
        state.add_column("class")
        state.add_column("installed")
        state.add_column("newest")
        state.add_column("active")
        state.add_column("damaged")
        for c in ArtifactClass:
            row = st["state"][c.value]
            damaged = st["damaged"][c.value]
            state.add_row(
                c.value,
                str(row["installed"]),
                str(row["newest"]),
                str(st["active"][c.value]),
                "-" if damaged is None else (", ".join(damaged) or "none"),
            )
        console.print(state)
        jobs = Table(title="Pending jobs", show_header=True)
        jobs.add_column("id")
        jobs.add_column("kind")
        jobs.add_column("state")
        jobs.add_column("tags")
        for j in st["jobs"]:
            jobs.add_row(str(j["id"]), j["kind"], j["state"], ", ".join(j["tags"]))
        console.print(jobs)
        return 0

    if common.cmd == "resume":
        app.scheduler.start()
        timeout = common.timeout if common.timeout is not None else app.settings.watch_timeout_s
        with console.status("[bold]pending jobs[/]", spinner="dots"):
            idle = app.scheduler.wait_idle(timeout)
        tbl.add_row("idle", "[green]yes[/green]" if idle else "[yellow]no[/yellow]")
        console.print(tbl)
        return 0 if idle else 1

    if common.cmd == "run":
        outcome = await app.check(cls)
        tbl.add_row("check", _outcome_style(outcome))
        if outcome is FreshnessOutcome.FAILURE:
            console.print(tbl)
            return 1
        if outcome is FreshnessOutcome.NOT_REQUIRED and not common.force:
            console.print(tbl)
            return 0

    started = await app.download(cls, force=common.force)
    tbl.add_row("enqueued", "[green]yes[/green]" if started else "no")
    if started and (common.wait or common.cmd == "run"):
        result = _wait_for_pipeline(app, common)
        tbl.add_row("pipeline", _outcome_style(result))
        tbl.add_row("installed", str(app.store.get(cls)))
        console.print(tbl)
        return 0 if result is FreshnessOutcome.SUCCESS else 1
    console.print(tbl)
    return 0


async def _amain(common: _CommonArgs) -> int:
    s = load_settings()
    app = build_app(s)
    try:
        return await _dispatch(app, common)
    finally:
        await app.aclose()


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    common = _common(args)

    s = load_settings()
    configure_logging(level=s.log_level, fmt=s.log_format)
    log = get_logger("blocklist_sync")

    run_id = uuid.uuid4().hex
    bind(run_id=run_id, command=common.cmd, artifact_class=common.artifact_class.value)

    console.print(
        Panel.fit(
            Text(
                f"blocklist-sync - {common.cmd}\nrun_id={run_id}\nclass={common.artifact_class.value}\ntransport={s.transport}",
                style="bold",
            ),
            title="Run",
        )
    )
    log.debug("cli.start", data_root=str(s.data_root))

    try:
        return asyncio.run(_amain(common))
    finally:
        clear_bindings()


if __name__ == "__main__":
    raise SystemExit(main())

"""engram CLI."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from engram.config import Config
from engram.core import Engram
from engram.exceptions import CaptureError, ConfigError, DuplicateKind, PublishError, StoreCorruption
from engram.log import configure_logging
from engram.types import NoOp, PatternState, RuleStatus
from engram.utils import json_dumps


def _get_config(ctx: click.Context) -> Config:
    overrides = {}
    if ctx.obj.get("data_dir"):
        overrides["data_dir"] = Path(ctx.obj["data_dir"])
    try:
        return Config.load(**overrides)
    except ConfigError as e:
        raise click.ClickException(str(e))


def _get_engram(ctx: click.Context) -> Engram:
    try:
        return Engram(_get_config(ctx))
    except StoreCorruption as e:
        raise click.ClickException(str(e))


def _close(eg: Engram) -> None:
    asyncio.run(eg.close())


@click.group()
@click.option("--data-dir", envvar="ENGRAM_DATA_DIR", default=None, help="Data directory")
@click.option("--log-level", envvar="ENGRAM_LOG_LEVEL", default="WARNING", help="Log level")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, log_level: str) -> None:
    """engram: learns workflow rules from coding-session tool use."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    configure_logging(log_level)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show memory and pattern counts."""
    eg = _get_engram(ctx)
    try:
        st = eg.status()
        click.echo("engram status")
        click.echo(f"  Memories:   {st['memories']}")
        for tier, n in sorted(st["tiers"].items()):
            click.echo(f"    {tier:<11} {n}")
        click.echo(f"  Vectors:    {st['vectors']} (index {st['index_size']})")
        click.echo(f"  Sessions:   {st['sessions']}")
        click.echo("  Patterns:")
        for state, n in st["patterns"].items():
            click.echo(f"    {state:<11} {n}")
        click.echo(f"  Rules:      {st['rules']}")
    finally:
        _close(eg)


@main.command()
@click.option("--input", "-i", "input_file", type=click.File("r"), default="-",
              help="JSON event file (defaults to stdin)")
@click.pass_context
def capture(ctx: click.Context, input_file) -> None:
    """Record one tool event read as JSON."""
    raw = input_file.read()
    eg = _get_engram(ctx)
    try:
        try:
            memory = eg.capture(raw)
        except CaptureError as e:
            raise click.ClickException(str(e))
        except DuplicateKind as e:
            click.echo(f"duplicate of memory {e.existing_id}, skipped")
            return
        # The hook returns at once; the next cycle backfills the vector.
        click.echo(f"captured memory {memory.id}")
    finally:
        _close(eg)


@main.command(name="session-start")
@click.argument("session_id")
@click.pass_context
def session_start(ctx: click.Context, session_id: str) -> None:
    """Mark the start of a coding session."""
    eg = _get_engram(ctx)
    try:
        eg.start_session(session_id)
        click.echo(f"session {session_id} started")
    finally:
        _close(eg)


@main.command(name="session-end")
@click.argument("session_id")
@click.option("--consolidate/--no-consolidate", default=True, help="Run a cycle after ending")
@click.pass_context
def session_end(ctx: click.Context, session_id: str, consolidate: bool) -> None:
    """Mark the end of a coding session."""
    eg = _get_engram(ctx)
    try:
        if not eg.end_session(session_id):
            click.echo(f"unknown session {session_id}", err=True)
        else:
            click.echo(f"session {session_id} ended")
        if consolidate:
            report = asyncio.run(eg.consolidate())
            if report is not None:
                _echo_report(report)
    finally:
        _close(eg)


@main.command()
@click.argument("query")
@click.option("--limit", "-k", default=10, help="Number of results")
@click.pass_context
def find(ctx: click.Context, query: str, limit: int) -> None:
    """Recall memories and patterns."""
    eg = _get_engram(ctx)
    try:
        hits = asyncio.run(eg.find(query, limit=limit))
        if not hits:
            click.echo("No results found.")
        for i, h in enumerate(hits, 1):
            click.echo(f"\n--- {i}. {h.kind} {h.id} (score: {h.score:.4f}, source: {h.source}) ---")
            click.echo(h.text[:200].replace("\n", " "))
    finally:
        _close(eg)


def _echo_report(report) -> None:
    if report.skipped:
        click.echo(f"cycle skipped: {report.skipped}")
        return
    click.echo(f"attached {report.attached}, seeded {len(report.seeded)}, "
               f"contradictions {report.contradictions}")
    for pattern_id, src, dst in report.transitions:
        click.echo(f"  pattern {pattern_id}: {src} -> {dst}")
    for ref in report.published:
        click.echo(f"  published pattern {ref.pattern_id} v{ref.version}: {ref.path}")
    for err in report.errors:
        click.echo(f"  error: {err}", err=True)
    if report.cancelled:
        click.echo("cycle cancelled")


@main.command()
@click.pass_context
def consolidate(ctx: click.Context) -> None:
    """Run one consolidation cycle."""
    eg = _get_engram(ctx)
    try:
        report = asyncio.run(eg.consolidate())
        if report is not None:
            _echo_report(report)
    finally:
        _close(eg)


@main.command()
@click.option("--state", "-s", type=click.Choice([s.value for s in PatternState]), default=None)
@click.pass_context
def patterns(ctx: click.Context, state: str | None) -> None:
    """List patterns."""
    eg = _get_engram(ctx)
    try:
        rows = eg.patterns.all({PatternState(state)} if state else None)
        if not rows:
            click.echo("No patterns.")
        for p in rows:
            click.echo(f"  [{p.id}] {p.state.value:<10} {p.confidence:.2f}  {p.statement}")
    finally:
        _close(eg)


@main.command()
@click.argument("pattern_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.pass_context
def pattern(ctx: click.Context, pattern_id: int, as_json: bool) -> None:
    """Show one pattern with its transition history."""
    eg = _get_engram(ctx)
    try:
        p = eg.patterns.get(pattern_id)
        if p is None:
            raise click.ClickException(f"unknown pattern {pattern_id}")
        if as_json:
            click.echo(json_dumps(p.model_dump(mode="json")))
            return
        click.echo(f"Pattern {p.id} ({p.state.value}, v{p.version})")
        click.echo(f"  {p.statement}")
        click.echo(f"  confidence {p.confidence:.2f}, evidence {p.evidence_count}, "
                   f"contradictions {p.contradiction_count} ({len(p.open_counter_ids)} open)")
        for e in eg.store.list_audit_events(target_type="pattern", target_id=str(p.id)):
            click.echo(f"  {e.created_at.isoformat()} {e.action}: {e.detail}")
    finally:
        _close(eg)


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include superseded and withdrawn rules")
@click.pass_context
def rules(ctx: click.Context, show_all: bool) -> None:
    """List published rules."""
    eg = _get_engram(ctx)
    try:
        rows = eg.store.list_rules(status=None if show_all else RuleStatus.ACTIVE)
        if not rows:
            click.echo("No rules.")
        for r in rows:
            click.echo(f"  pattern {r.pattern_id} v{r.version} [{r.status.value}] "
                       f"{r.confidence:.2f} {r.file_path}")
    finally:
        _close(eg)


@main.command()
@click.argument("pattern_id", type=int, required=False)
@click.option("--force", is_flag=True, help="Overwrite artifacts modified outside engram")
@click.pass_context
def publish(ctx: click.Context, pattern_id: int | None, force: bool) -> None:
    """Publish one pattern, or every synthesized pattern."""
    eg = _get_engram(ctx)
    try:
        try:
            results = asyncio.run(eg.publish(pattern_id, force=force))
        except PublishError as e:
            raise click.ClickException(str(e))
        if not results:
            click.echo("Nothing to publish.")
        for r in results:
            if isinstance(r, NoOp):
                click.echo(f"  pattern {r.pattern_id}: no-op ({r.reason})")
            else:
                click.echo(f"  pattern {r.pattern_id}: v{r.version} -> {r.path}")
    finally:
        _close(eg)


@main.command(name="rebuild-index")
@click.pass_context
def rebuild_index(ctx: click.Context) -> None:
    """Rebuild the similarity index from stored vectors."""
    eg = _get_engram(ctx)
    try:
        size = eg.rebuild_index()
        click.echo(f"index rebuilt: {size} vectors")
    finally:
        _close(eg)


@main.command()
@click.confirmation_option(prompt="Delete all memories, patterns and rule records?")
@click.pass_context
def reset(ctx: click.Context) -> None:
    """Delete the database and index."""
    config = _get_config(ctx)
    Engram.reset(config)
    click.echo(f"reset {config.data_dir}")


@main.command()
@click.option("--host", "-h", default=None, help="Bind host")
@click.option("--port", "-p", default=None, type=int, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the HTTP API server with periodic consolidation."""
    import uvicorn
    from engram.api.routes import create_app

    config = _get_config(ctx)
    configure_logging(config.log_level, json_logs=True)
    host = host or config.api.host
    port = port or config.api.port
    app = create_app(config)
    click.echo(f"Starting engram API on {host}:{port}", err=True)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    sys.exit(main())

"""CLI interface for tmuxloop."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from .analyzer import AnalysisHints, ContentAnalyzer
from .config import DaemonConfig, load_config, validate_config
from .control import encode_text, send_command
from .daemon import Daemon
from .exceptions import TmuxLoopError


@click.group()
@click.version_option(package_name="tmuxloop")
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Config file (default: $TMUXLOOP_CONFIG or ~/.tmuxloop/config.yaml)"
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path]):
    """tmuxloop - keep AI coding agents in tmux moving."""
    load_dotenv()
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load(ctx: click.Context) -> DaemonConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except TmuxLoopError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def _call(ctx: click.Context, line: str) -> dict:
    """Send a control command to the running daemon; exit 1 on error."""
    config = _load(ctx)
    try:
        response = send_command(config.socket_path, line)
    except TmuxLoopError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    if not response.get("ok"):
        click.echo(f"Error: {response.get('error', 'unknown error')}", err=True)
        raise SystemExit(1)
    return response


def _fmt_seconds(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs:02d}s"


# --- Daemon ---

@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--dry-run", is_flag=True, help="Log messages instead of sending them")
@click.pass_context
def run(ctx: click.Context, verbose: bool, dry_run: bool):
    """Run the daemon in the foreground."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = _load(ctx)
    if dry_run:
        config.dry_run = True
    try:
        for warning in validate_config(config):
            click.echo(f"[WARN] {warning}", err=True)
    except TmuxLoopError as e:
        click.echo(f"Config errors:\n{e}", err=True)
        raise SystemExit(1)

    try:
        asyncio.run(Daemon(config).run())
    except TmuxLoopError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


# --- Loop control ---

@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Raw JSON output")
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show loops and session signals."""
    response = _call(ctx, "status")
    if as_json:
        click.echo(json.dumps(response, indent=2))
        return

    loops = response.get("loops", {})
    sessions = response.get("sessions", {})
    if response.get("global_paused"):
        click.echo("All loops paused")
    if not loops and not sessions:
        click.echo("No loops running")
        return
    for name in sorted(set(loops) | set(sessions)):
        loop = loops.get(name)
        info = sessions.get(name, {})
        if loop is None:
            state = "monitor only"
        elif loop["paused"]:
            state = f"paused ({_fmt_seconds(loop['time_remaining'])} left)"
        else:
            state = f"every {loop['delay_minutes']}m, next in {_fmt_seconds(loop['time_remaining'])}"
        context = info.get("context_percent")
        busy = "busy" if info.get("busy") else "idle"
        context_str = f"{context}%" if context is not None else "?"
        click.echo(f"{name:16} {state:36} {busy:5} context {context_str}")


@cli.command()
@click.argument("session")
@click.option("--delay", "-d", type=float, default=None, help="Minutes between messages")
@click.pass_context
def start(ctx: click.Context, session: str, delay: Optional[float]):
    """Start a message loop for SESSION."""
    line = f"start {session}" + (f" {delay:g}" if delay is not None else "")
    response = _call(ctx, line)
    loop = response.get("loop") or {}
    click.echo(f"Loop started for {session} (next in {_fmt_seconds(loop.get('time_remaining'))})")


@cli.command()
@click.argument("session", required=False)
@click.option("--all", "stop_all", is_flag=True, help="Stop every loop")
@click.pass_context
def stop(ctx: click.Context, session: Optional[str], stop_all: bool):
    """Stop the loop for SESSION (or --all)."""
    if stop_all:
        _call(ctx, "stop-all")
        click.echo("All loops stopped")
        return
    if not session:
        raise click.UsageError("SESSION or --all required")
    _call(ctx, f"stop {session}")
    click.echo(f"Loop stopped for {session}")


@cli.command()
@click.argument("session", required=False)
@click.pass_context
def pause(ctx: click.Context, session: Optional[str]):
    """Pause SESSION, or every loop."""
    _call(ctx, f"pause {session}" if session else "pause")
    click.echo(f"Paused {session or 'all loops'}")


@cli.command()
@click.argument("session", required=False)
@click.pass_context
def resume(ctx: click.Context, session: Optional[str]):
    """Resume SESSION, or every loop."""
    _call(ctx, f"resume {session}" if session else "resume")
    click.echo(f"Resumed {session or 'all loops'}")


@cli.command()
@click.argument("session")
@click.argument("minutes", type=float)
@click.pass_context
def delay(ctx: click.Context, session: str, minutes: float):
    """Change the delay of SESSION's loop (takes effect immediately)."""
    _call(ctx, f"delay {session} {minutes:g}")
    click.echo(f"Delay for {session} set to {minutes:g} min")


@cli.command()
@click.argument("session")
@click.argument("text")
@click.pass_context
def send(ctx: click.Context, session: str, text: str):
    """Send TEXT to SESSION now."""
    _call(ctx, f"send {session} {encode_text(text)}")
    click.echo(f"Sent to {session}")


@cli.command("reset-cooldown")
@click.argument("session")
@click.pass_context
def reset_cooldown(ctx: click.Context, session: str):
    """Allow an immediate auto-accept for SESSION."""
    _call(ctx, f"reset-cooldown {session}")
    click.echo(f"Auto-accept cooldown reset for {session}")


@cli.command()
@click.argument("session")
@click.pass_context
def schedule(ctx: click.Context, session: str):
    """Show SESSION's schedule."""
    response = _call(ctx, f"schedule {session}")
    sched = response["schedule"]
    click.echo(f"Schedule: {'enabled' if sched['enabled'] else 'disabled (always active)'}")
    for active_range in sched.get("active", []):
        click.echo(f"  {active_range}")
    click.echo(f"Active now: {'yes' if response.get('active_now') else 'no'}")


# --- Diagnostics ---

@cli.command()
@click.argument("session", required=False)
@click.option(
    "--file", "-f", "snapshot_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Analyze a saved pane snapshot instead of asking the daemon"
)
@click.pass_context
def analyze(ctx: click.Context, session: Optional[str], snapshot_file: Optional[Path]):
    """Show prompt / busy / context signals for SESSION.

    Example:
        tmuxloop analyze claude
        tmux capture-pane -p -e -t claude > pane.txt && tmuxloop analyze --file pane.txt
    """
    if snapshot_file is not None:
        snapshot = snapshot_file.read_text(errors="replace")
        result = ContentAnalyzer().analyze(snapshot, session or snapshot_file.stem, AnalysisHints.all())
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    if not session:
        raise click.UsageError("SESSION or --file required")
    response = _call(ctx, f"analyze {session}")
    click.echo(json.dumps(
        {"analysis": response["analysis"], "conditional_message": response.get("conditional_message")},
        indent=2,
    ))


if __name__ == "__main__":
    cli()

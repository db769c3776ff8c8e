"""
Click CLI for stepdeploy.
"""

import json
import logging
import signal
import sys
import threading
from typing import Optional

import click

from . import __version__
from .app import DEFAULT_KEEP_VERSIONS, App
from .aws import new_clients
from .config import DEFAULT_CONFIG_FILE, load_config
from .errors import Cancelled, RollbackTargetNotFound, StepDeployError
from .render import FORMAT_TABLE, VERSION_FORMATS, format_status, format_versions, rollback_diff, to_json
from .tags import merge_tags, parse_user_tags

logger = logging.getLogger(__name__)

LOG_LEVELS = ["debug", "info", "warning", "error"]


def _new_app(ctx: click.Context, alias: Optional[str] = None) -> App:
    opts = ctx.obj
    cfg = load_config(opts["config"])
    clients = new_clients(region=opts["region"] or cfg.aws_region, profile=opts["profile"])
    return App(cfg, clients=clients, alias=alias, cancel=opts["cancel"], color=opts["color"])


def _cancel_on_signal(cancel: threading.Event):
    """Signal handler that sets the cancellation token."""
    def handler(signum: int, frame) -> None:
        logger.warning(f"received {signal.Signals(signum).name}, cancelling")
        cancel.set()
    return handler


def _run(fn):
    """Run a command body, mapping errors to exit codes."""
    try:
        return fn()
    except Cancelled as e:
        click.echo(f"cancelled: {e}", err=True)
        sys.exit(130)
    except KeyboardInterrupt:
        click.echo("\ncancelled by user", err=True)
        sys.exit(130)
    except StepDeployError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(__version__, prog_name="stepdeploy")
@click.option("--config", "-c", default=DEFAULT_CONFIG_FILE, show_default=True, help="Config file path")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default="info", show_default=True, help="Log level")
@click.option("--region", help="AWS region (overrides aws_region in config)")
@click.option("--profile", help="AWS named profile")
@click.option("--no-color", is_flag=True, help="Disable colored diff output")
@click.pass_context
def main(ctx, config, log_level, region, profile, no_color):
    """
    stepdeploy - Deploy AWS Step Functions state machines and their triggers.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    cancel = threading.Event()
    # SIGINT keeps raising KeyboardInterrupt
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGTERM, _cancel_on_signal(cancel))
        if previous is not None:
            ctx.call_on_close(lambda: signal.signal(signal.SIGTERM, previous))
    ctx.ensure_object(dict)
    ctx.obj.update({
        "config": config,
        "region": region,
        "profile": profile,
        "color": not no_color,
        "cancel": cancel,
    })


@main.command()
@click.option("--dry-run", is_flag=True, help="Show the diff without changing anything")
@click.option("--skip-trigger", is_flag=True, help="Do not reconcile rules and schedules")
@click.option("--unified/--compact", default=True, help="Diff format for --dry-run")
@click.option("--tag", "tags", multiple=True, help="Extra tag key=value, applied to every resource")
@click.pass_context
def deploy(ctx, dry_run, skip_trigger, unified, tags):
    """
    Publish a new version, route the alias to it and sync triggers.
    """
    try:
        extra_tags = parse_user_tags(tags)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    def body():
        app = _new_app(ctx)
        app.cfg.tags = merge_tags(app.cfg.tags, extra_tags)
        output, text = app.deploy(dry_run=dry_run, skip_trigger=skip_trigger, unified=unified)
        if dry_run:
            if text:
                click.echo(text)
            return
        click.echo(f"deployed {output.version_arn}")
    _run(body)


@main.command()
@click.option("--dry-run", is_flag=True, help="Show what would be rolled back")
@click.option("--keep-version", is_flag=True, help="Keep the version rolled back from")
@click.option("--alias", help="Alias to roll back (default: config alias)")
@click.pass_context
def rollback(ctx, dry_run, keep_version, alias):
    """
    Route the alias back to the previous version.
    """
    def body():
        app = _new_app(ctx, alias)
        try:
            target = app.rollback(dry_run=dry_run, keep_version=keep_version)
        except RollbackTargetNotFound as e:
            click.echo(f"Error: rollback target not found: {e}", err=True)
            sys.exit(1)
        if target is not None:
            if dry_run:
                click.echo(rollback_diff(target, color=ctx.obj["color"]))
                click.echo(f"would roll back to version {target.version}")
            else:
                click.echo(f"rolled back to version {target.version}")
    _run(body)


@main.command()
@click.option("--unified", "-u", is_flag=True, help="Unified diff format")
@click.option("--qualifier", help="Version number or alias to compare against")
@click.option("--alias", help="Alias the triggers are bound to (default: config alias)")
@click.pass_context
def diff(ctx, unified, qualifier, alias):
    """
    Show differences between the configuration and the deployed state.
    """
    def body():
        app = _new_app(ctx, alias)
        text = app.diff(unified=unified, qualifier=qualifier)
        if text:
            click.echo(text)
    _run(body)


@main.command()
@click.option("--format", "fmt", type=click.Choice(VERSION_FORMATS), default=FORMAT_TABLE, show_default=True)
@click.option("--delete", is_flag=True, help="Delete old versions")
@click.option("--keep-versions", type=int, default=DEFAULT_KEEP_VERSIONS, show_default=True,
              help="Number of newest versions to keep with --delete")
@click.pass_context
def versions(ctx, fmt, delete, keep_versions):
    """
    List state machine versions, optionally purging old ones.
    """
    def body():
        app = _new_app(ctx)
        result = app.versions(delete=delete, keep_versions=keep_versions)
        text = format_versions(result.versions, fmt)
        if text is not None:
            click.echo(text)
    _run(body)


@main.command()
@click.option("--format", "fmt", type=click.Choice(["text", "json"]), default="text", show_default=True)
@click.option("--latest", is_flag=True, help="Show the latest revision instead of the alias")
@click.option("--alias", help="Alias to report (default: config alias)")
@click.pass_context
def status(ctx, fmt, latest, alias):
    """
    Show the state machine and its triggers.
    """
    def body():
        app = _new_app(ctx, alias)
        result = app.status(latest=latest)
        if fmt == "json":
            click.echo(to_json(result))
        else:
            click.echo(format_status(result))
    _run(body)


@main.command()
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@click.option("--force", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def delete(ctx, dry_run, force):
    """
    Delete the state machine and its managed triggers.
    """
    def body():
        app = _new_app(ctx)
        text = app.delete(dry_run=dry_run, force=force, confirm=lambda msg: click.prompt(msg, default=""))
        if dry_run and text:
            click.echo(text)
    _run(body)


@main.command()
@click.option("--input", "input_path", type=click.Path(exists=True, dir_okay=False),
              help="JSON file with the execution input")
@click.option("--execution-name", help="Execution name (default: random UUID)")
@click.option("--qualifier", help="Version number or alias to execute")
@click.option("--async", "async_", is_flag=True, help="Do not wait for the execution to finish")
@click.option("--dump-history", is_flag=True, help="Print the execution history")
@click.pass_context
def execute(ctx, input_path, execution_name, qualifier, async_, dump_history):
    """
    Start an execution of the state machine.
    """
    def body():
        payload = "{}"
        if input_path:
            with open(input_path) as f:
                payload = f.read()
            try:
                json.loads(payload)
            except ValueError as e:
                click.echo(f"Invalid input JSON: {e}", err=True)
                sys.exit(1)
        app = _new_app(ctx)
        output, history = app.execute(input=payload, qualifier=qualifier, name=execution_name,
                                      async_=async_, dump_history=dump_history)
        for event in history:
            click.echo(f"{event.timestamp.isoformat()}\t{event.step}\t{event.type}\t{event.elapsed()}")
        if output.stop_date is not None:
            click.echo(f"execution stopped at {output.stop_date.isoformat()} (elapsed {output.elapsed()})")
        if output.output:
            click.echo(output.output)
        if output.detail:
            click.echo(to_json(output.detail), err=True)
        if output.failed:
            sys.exit(1)
    _run(body)


if __name__ == "__main__":
    main()

"""
QuickPrompt CLI — inspect and maintain the local conversation history.

Registered as `quickprompt` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from .backends import DEFAULT_BASE_URL, AppleFMBackend, OpenAICompatibleBackend
from .config import WidgetConfig
from .exceptions import AppleFMSetupError, ModelLoadError, QuickPromptError
from .gateway import GenerationGateway
from .protocols import GenerationBackend
from .store import DB_FILENAME, RecordStore

logger = logging.getLogger("quickprompt.cli")

T = TypeVar("T")


def _resolve_log_level(level: str | int, fallback: int = logging.WARNING) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        if level.isdigit():
            return int(level)
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    logger.warning(
        "[QuickPrompt CLI] Unsupported log level '%s'; falling back to %s.",
        level,
        logging.getLevelName(fallback),
    )
    return fallback


def _with_store(db: str, action: Callable[[RecordStore], Awaitable[T]]) -> T:
    """Open the store at *db*, run *action* on it and always close it."""

    async def runner() -> T:
        store = RecordStore.open(db, accepted_dimensions=None)
        try:
            await store.initialize()
            return await action(store)
        finally:
            await store.close()

    return asyncio.run(runner())


def _shorten(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="quickprompt")
@click.option(
    "--db",
    default=DB_FILENAME,
    show_default=True,
    envvar="QUICKPROMPT_DB",
    help="Path to the sqlite history database.",
)
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    envvar="QUICKPROMPT_LOG_LEVEL",
    help="Logging level (name or number).",
)
@click.pass_context
def cli(ctx: click.Context, db: str, log_level: str) -> None:
    """QuickPrompt — local conversation history and model checks."""
    logging.basicConfig(
        level=_resolve_log_level(log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"db": db}


# ── History ───────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--limit", "-n", default=10, show_default=True, type=int, help="Records to show.")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of a table.")
@click.pass_obj
def history(obj: dict[str, Any], limit: int, as_json: bool) -> None:
    """Show the most recent conversations, newest first."""
    summaries = _with_store(obj["db"], lambda store: store.recent(limit))
    if as_json:
        click.echo(json.dumps([summary.to_dict() for summary in summaries], indent=2, ensure_ascii=False))
        return
    if not summaries:
        click.echo("No conversations stored.")
        return
    for summary in summaries:
        stamp = summary.created_at.strftime("%Y-%m-%d %H:%M:%S")
        click.secho(f"#{summary.id}  {stamp}  [{summary.model_version}]", bold=True)
        click.echo(f"  > {_shorten(summary.prompt)}")
        click.echo(f"  < {_shorten(summary.response)}")


@cli.command()
@click.pass_obj
def count(obj: dict[str, Any]) -> None:
    """Print how many conversations are stored."""
    click.echo(_with_store(obj["db"], lambda store: store.count()))


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
def clear(obj: dict[str, Any], yes: bool) -> None:
    """Delete every stored conversation."""
    if not yes and not click.confirm("Delete all stored conversations?"):
        click.echo("Aborted.")
        return
    removed = _with_store(obj["db"], lambda store: store.clear_all())
    click.secho(f"Deleted {removed} conversation(s).", fg="green")


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False, writable=True))
@click.pass_obj
def export(obj: dict[str, Any], path: str) -> None:
    """Export every conversation, oldest first, as JSON Lines to PATH."""
    written = _with_store(obj["db"], lambda store: store.export_jsonl(path))
    click.secho(f"Exported {written} conversation(s) to {path}", fg="green")


# ── Model ─────────────────────────────────────────────────────────────────────


def _build_backend(apple: bool, model: str | None, base_url: str) -> GenerationBackend:
    if apple:
        return AppleFMBackend()
    if not model:
        raise click.UsageError("--model is required unless --apple is given.")
    return OpenAICompatibleBackend(model, base_url=base_url)


@cli.command()
@click.argument("prompt")
@click.option("--apple", is_flag=True, help="Use the on-device Apple Foundation Model.")
@click.option("--model", envvar="QUICKPROMPT_MODEL_ID", help="Model id on the OpenAI-compatible server.")
@click.option(
    "--base-url",
    default=DEFAULT_BASE_URL,
    show_default=True,
    envvar="QUICKPROMPT_BASE_URL",
    help="OpenAI-compatible server URL.",
)
@click.option("--no-save", is_flag=True, help="Do not store the exchange.")
@click.pass_obj
def ask(
    obj: dict[str, Any], prompt: str, apple: bool, model: str | None, base_url: str, no_save: bool
) -> None:
    """Stream one answer to PROMPT and store it in the history."""
    backend = _build_backend(apple, model, base_url)
    config = WidgetConfig.from_env()

    async def run(store: RecordStore) -> None:
        gateway = GenerationGateway(config)
        try:
            await gateway.load(backend)
            ticket = await gateway.submit(prompt)
            parts: list[str] = []
            try:
                async for fragment in gateway.with_timeout(prompt):
                    parts.append(fragment)
                    click.echo(fragment, nl=False)
            finally:
                ticket.finish()
            click.echo()
            response = "".join(parts)
            if no_save or not response.strip():
                return
            record = store.build_record(prompt, response, gateway.model_version)
            result = await store.save(record)
            if not result.ok:
                click.secho(f"Not saved: {result.error}", fg="yellow", err=True)
        finally:
            await gateway.dispose()

    _with_store(obj["db"], run)


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except AppleFMSetupError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc
    except ModelLoadError as exc:
        if exc.category != "unavailable":
            click.secho(f"Error: {exc}", fg="red", err=True)
            raise SystemExit(1) from exc
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc
    except QuickPromptError as exc:
        click.secho(f"Error: {exc}", fg="red", err=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    cli_entry()

"""
Command-line entry point.

Examples:
  stockwright init-db --seed
  stockwright ask "add 50 bolts to warehouse-1"
  stockwright run --debug
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
import orjson
import structlog

from Stockwright.catalog import DEFAULT_CATALOG
from Stockwright.config import Settings, load_settings
from Stockwright.db import create_schema, dispose_engine
from Stockwright.gateway import CompletionGateway, LanguageModelGateway
from Stockwright.logging import redact_settings, setup_logging
from Stockwright.metrics import get_counters
from Stockwright.pipeline import CommandPipeline, CommandSession
from Stockwright.schemas import ClarifyTurn, ExecutedTurn, TurnResult
from Stockwright.seed import seed_demo_data
from Stockwright.store import SqlInventoryStore

log = structlog.get_logger()

EXIT_WORDS = frozenset({"quit", "exit", ":q"})


def _make_gateway(settings: Settings) -> CompletionGateway:
    return LanguageModelGateway(settings)


def _load() -> Settings:
    if not Path("config.toml").exists() and not Path(".env").exists():
        msg = click.style(
            "WARNING: Could not find 'config.toml' or '.env' in the current directory.",
            fg="yellow",
            bold=True,
        )
        click.echo(f"{msg}\nContinuing with default settings.", err=True)
    settings = load_settings()
    setup_logging(settings)
    log.info("cli.settings", **redact_settings(settings))
    return settings


def _run(fn: Callable[[], Awaitable[Any]]) -> Any:
    async def _main() -> Any:
        try:
            return await fn()
        finally:
            await dispose_engine()

    return asyncio.run(_main())


def render_turn(turn: TurnResult, *, debug: bool = False) -> str:
    if isinstance(turn, ExecutedTurn):
        out = turn.result.message
        if debug and turn.result.data is not None:
            out += "\n" + orjson.dumps(
                turn.result.data, option=orjson.OPT_INDENT_2, default=str
            ).decode()
    elif isinstance(turn, ClarifyTurn):
        out = turn.prompt
    else:
        out = f"Not done: {turn.reason}"
    if debug and turn.debug is not None:
        dump = turn.debug.model_dump(mode="json", exclude_none=True)
        out += "\n[debug] " + orjson.dumps(dump).decode()
    return out


async def _open_pipeline(settings: Settings) -> tuple[CommandPipeline, CompletionGateway]:
    await create_schema()
    gateway = _make_gateway(settings)
    pipeline = CommandPipeline.build(settings, gateway=gateway, store=SqlInventoryStore())
    return pipeline, gateway


async def _close(gateway: CompletionGateway) -> None:
    close = getattr(gateway, "close", None)
    if close is not None:
        await close()


@click.group()
def cli() -> None:
    """Natural-language inventory commands."""


@cli.command("init-db")
@click.option("--seed", is_flag=True, help="Insert a small demo inventory.")
def init_db(seed: bool) -> None:
    """Create the database schema."""
    _load()

    async def _main() -> bool:
        await create_schema()
        return await seed_demo_data() if seed else False

    seeded = _run(_main)
    click.echo("Schema ready.")
    if seed:
        click.echo("Seeded demo data." if seeded else "Demo data already present.")


@cli.command()
@click.argument("text")
@click.option("--debug", is_flag=True, help="Print classifier and extractor output.")
def ask(text: str, debug: bool) -> None:
    """Run a single command and print the outcome."""
    settings = _load()

    async def _main() -> TurnResult:
        pipeline, gateway = await _open_pipeline(settings)
        try:
            return await pipeline.submit(pipeline.new_session(), text)
        finally:
            await _close(gateway)

    click.echo(render_turn(_run(_main), debug=debug))


@cli.command()
@click.option("--debug", is_flag=True, help="Print classifier and extractor output.")
def run(debug: bool) -> None:
    """Interactive session. Type 'undo' to reverse the last change, 'quit' to leave."""
    settings = _load()

    async def _main() -> None:
        pipeline, gateway = await _open_pipeline(settings)
        session: CommandSession = pipeline.new_session()
        try:
            while True:
                try:
                    text = await asyncio.to_thread(click.prompt, "stockwright", prompt_suffix="> ")
                except (click.Abort, EOFError):
                    break
                if text.strip().lower() in EXIT_WORDS:
                    break
                turn = await pipeline.submit(session, text)
                click.echo(render_turn(turn, debug=debug))
        finally:
            await _close(gateway)
            if debug:
                click.echo(orjson.dumps(get_counters(), option=orjson.OPT_SORT_KEYS).decode())

    _run(_main)


@cli.command()
def catalog() -> None:
    """List the operations commands can map to."""
    for spec in DEFAULT_CATALOG:
        marker = "*" if spec.mutating else " "
        click.echo(f"{marker} {spec.name.value}: {spec.description}")
        for name, f in spec.argument_schema.items():
            req = "required" if f.required else "optional"
            click.echo(f"      {name} ({f.type}, {req})")

"""Command-line interface for the console bridge.

Commands:
    pipe     Run a bridge session fed by newline-delimited JSON events on stdin.
    resolve  Resolve one stack trace to a source location and print it.
    decode   Decode a mapping string and print its records.

Configuration comes from the environment (and a `.env` file, loaded before
any settings access); see `consolelog_bridge.config.Settings`.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import List, Optional

import typer

# Load .env file if present (before any config access)
try:
    from dotenv import find_dotenv, load_dotenv

    env_file = find_dotenv(usecwd=True)
    if env_file:
        load_dotenv(env_file)
        logging.debug("Loaded environment from %s", env_file)
except ImportError:  # pragma: no cover - python-dotenv is a declared dependency
    pass

from .bridge import ConsoleBridge
from .config import get_settings
from .resolution import LocationResolver, decode_mappings

app = typer.Typer(help="Console log instrumentation bridge CLI")
logger = logging.getLogger(__name__)


@app.callback()
def main() -> None:  # pragma: no cover - simple callback
    """consolelog-bridge CLI.

    Use a subcommand like 'pipe' to run a session.
    """
    pass


async def _read_line() -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, sys.stdin.readline)


async def _run_pipe(grace: float) -> int:
    settings = get_settings()
    bridge = ConsoleBridge(settings)
    captured = 0
    await bridge.start()
    try:
        while True:
            line = await _read_line()
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
                method = str(event.get("method") or "log")
                args = event.get("args") or []
                stack = event.get("stack")
            except (ValueError, AttributeError) as e:
                logger.warning("Skipping invalid event line: %s", e)
                continue
            if not isinstance(args, list):
                args = [args]
            if bridge.capture(method, args, stack) is not None:
                captured += 1
        await bridge.drain()
        if grace > 0:
            await asyncio.sleep(grace)
    finally:
        undelivered = bool(bridge.connection.queue or bridge.connection.pending)
        if undelivered:
            bridge.connection.persist()
        await bridge.shutdown(clear_persisted=not undelivered)
    return captured


@app.command(help="Capture newline-delimited JSON console events read from stdin.")
def pipe(
    grace: float = typer.Option(
        0.5, help="Seconds to wait for collector acknowledgements after EOF"
    ),
) -> None:
    """Run one bridge session over stdin.

    Each line is an object ``{"method": str, "args": [...], "stack": str}``.
    Unacknowledged messages left at EOF are persisted for the next session.
    """
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)
    captured = asyncio.run(_run_pipe(grace))
    typer.echo(f"Captured {captured} console call(s)", err=True)


async def _run_resolve(stack_text: str, assets: List[str], skip_leading: int) -> dict:
    resolver = LocationResolver(get_settings())
    try:
        for url in assets:
            resolver.register_asset(url)
        raw = resolver.resolve_raw(stack_text, skip_leading=skip_leading)
        if raw.url:
            resolver.register_asset(raw.url)
        mapped = await resolver.resolve_mapped(raw)
    finally:
        await resolver.close()
    return {
        "raw": raw.model_dump(exclude_none=True),
        "mapped": mapped.model_dump(exclude_none=True),
    }


@app.command(help="Resolve a stack trace (argument or stdin) to a source location.")
def resolve(
    stack: Optional[str] = typer.Argument(None, help="Stack text; read from stdin when omitted"),
    asset: List[str] = typer.Option([], help="Additional asset URL to index (repeatable)"),
    skip_leading: int = typer.Option(
        0, help="Leading stack lines to skip (the capture shim skips 2)"
    ),
) -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)
    stack_text = stack if stack is not None else sys.stdin.read()
    result = asyncio.run(_run_resolve(stack_text, asset, skip_leading))
    typer.echo(json.dumps(result, indent=2))


@app.command(help="Decode a mapping string and print one record per line.")
def decode(mappings: str = typer.Argument(..., help="Delta-encoded mapping string")) -> None:
    table = decode_mappings(mappings)
    for record in table.records:
        if record.has_original:
            typer.echo(
                f"{record.generatedLine}:{record.generatedColumn} -> "
                f"source[{record.sourceIndex}] {record.originalLine}:{record.originalColumn}"
            )
        else:
            typer.echo(f"{record.generatedLine}:{record.generatedColumn}")
    typer.echo(f"records={len(table.records)} skipped_segments={table.skipped_segments}", err=True)
    if table.skipped_segments:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover
    app()

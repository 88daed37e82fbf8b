"""Coda entry point.

Wires the components together and runs a line-oriented terminal loop:
  Settings -> EventBus -> AnthropicProvider -> ToolRegistry -> TurnEngine
"""

from __future__ import annotations

import asyncio
import logging
import sys

from coda.config import Settings
from coda.engine.channel import TurnEventType
from coda.engine.provider import AnthropicProvider
from coda.engine.tools import LocalToolBackend, ToolRegistry
from coda.engine.turn import TurnEngine
from coda.events import TOOL_EXECUTED, Event, EventBus
from coda.tools.builtin import register_builtin_tools

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize components in dependency order.

    1. EventBus - optional, only if event_bus_enabled
    2. AnthropicProvider - owns the httpx client
    3. ToolRegistry - built-in tools on a local backend
    4. TurnEngine
    """
    bus = None
    if settings.event_bus_enabled:
        bus = EventBus()

        async def log_tool(event: Event) -> None:
            logger.debug(
                "Tool %s finished (error=%s, %d ms)",
                event.data.get("tool_name"),
                event.data.get("is_error"),
                event.data.get("duration_ms", 0),
            )

        bus.on(TOOL_EXECUTED, log_tool)
        await bus.start()

    provider = AnthropicProvider(settings)
    await provider.start()

    backend = LocalToolBackend()
    register_builtin_tools(backend, settings)
    registry = ToolRegistry([backend])

    engine = TurnEngine(provider, registry, settings, bus=bus)

    return {
        "bus": bus,
        "provider": provider,
        "registry": registry,
        "engine": engine,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Coda...")

    engine = components.get("engine")
    if engine and engine.busy:
        engine.cancel("shutting down")

    provider = components.get("provider")
    if provider:
        await provider.close()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    logger.info("Coda shutdown complete.")


async def run_repl(engine: TurnEngine) -> None:
    """Read queries from stdin, stream answers to stdout. Ctrl-C cancels a turn."""
    while True:
        try:
            query = await asyncio.to_thread(input, "> ")
        except EOFError:
            return
        query = query.strip()
        if not query:
            continue
        if query in ("/exit", "/quit"):
            return

        try:
            async for event in engine.stream_query(query):
                if event.type == TurnEventType.CONTENT:
                    sys.stdout.write(event.text)
                    sys.stdout.flush()
                elif event.type == TurnEventType.TOOL_CALL and event.tool_call:
                    sys.stdout.write(f"\n[{event.tool_call.name}]\n")
                elif event.type == TurnEventType.ERROR:
                    sys.stdout.write(f"\nError: {event.text}\n")
                elif event.type == TurnEventType.COMPLETE:
                    sys.stdout.write("\n")
        except KeyboardInterrupt:
            engine.cancel("interrupted")


async def _amain(settings: Settings) -> None:
    components = await create_components(settings)
    logger.info("Coda started: model=%s, workspace=%s", settings.model, settings.workspace_dir)
    try:
        await run_repl(components["engine"])
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point: load settings, configure logging, run the loop."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        asyncio.run(_amain(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

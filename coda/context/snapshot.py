"""Context snapshot bridge.

Captures a point-in-time description of the project context around a
turn (which context files were loaded, their contents, variables, the
working directory) so a persisted conversation can later be resumed
against the same picture.  File discovery itself belongs to an external
ContextProvider; this module only asks it for the current result.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import BaseModel, Field

from coda.config import Settings
from coda.events import CONTEXT_SNAPSHOT, Event, EventBus

logger = logging.getLogger(__name__)

_TRUNCATION_MARKER = "\n\n[... content truncated for context snapshot ...]"
_MIN_PARTIAL_CHARS = 100


class ContextEntry(BaseModel):
    """One discovered context file."""

    path: str
    content: str
    level: str = "project"  # global, project, directory
    last_modified: float | None = None  # epoch seconds


class ContextLoadResult(BaseModel):
    entries: list[ContextEntry] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)


class HierarchyMetadata(BaseModel):
    levels: list[str] = Field(default_factory=list)
    total_size: int = 0
    file_count: int = 0
    last_modified: float = 0.0


class ContextSnapshot(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    phase: str = "manual"  # pre_turn, post_turn, manual
    turn_id: str | None = None
    entries: list[ContextEntry] = Field(default_factory=list)
    working_directory: str = ""
    environment: dict[str, str] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    hierarchy: HierarchyMetadata = Field(default_factory=HierarchyMetadata)
    truncated: bool = False

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> ContextSnapshot:
        return cls.model_validate_json(data)


class ContextChanges(BaseModel):
    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.modified or self.removed)


class ContextProvider(Protocol):
    """External collaborator that discovers project context files."""

    async def load_context(self) -> ContextLoadResult: ...


def _entry_size(entry: ContextEntry) -> int:
    return len(entry.model_dump_json())


def truncate_entries(entries: list[ContextEntry], max_size: int) -> list[ContextEntry]:
    """Keep the newest (then smallest) entries that fit in 80% of max_size.

    The first entry that does not fit is kept in shortened form when more
    than 100 characters of it would survive; everything after is dropped.
    """
    target = max_size * 0.8
    ordered = sorted(entries, key=lambda e: (-(e.last_modified or 0), len(e.content)))

    kept: list[ContextEntry] = []
    current = 0
    for entry in ordered:
        size = _entry_size(entry)
        if current + size <= target:
            kept.append(entry)
            current += size
            continue
        room = int((target - current) * 0.8)
        if room > _MIN_PARTIAL_CHARS:
            kept.append(entry.model_copy(update={"content": entry.content[:room] + _TRUNCATION_MARKER}))
        break
    return kept


class ContextSnapshotBridge:
    """Builds, restores and diffs context snapshots for a conversation.

    Captures scheduled around a turn run as background tasks and report
    through the event bus; the turn never waits on them.
    """

    def __init__(
        self,
        provider: ContextProvider,
        settings: Settings,
        bus: EventBus | None = None,
        conversation_id: str = "",
    ) -> None:
        self._provider = provider
        self._settings = settings
        self._bus = bus
        self._conversation_id = conversation_id
        self._baseline: ContextSnapshot | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def last_snapshot(self) -> ContextSnapshot | None:
        return self._baseline

    async def load(self) -> ContextLoadResult:
        """Ask the provider for context. A failing provider means no context."""
        try:
            return await self._provider.load_context()
        except Exception as e:
            logger.warning("Context provider failed, continuing without context: %s", e)
            return ContextLoadResult()

    async def capture(
        self,
        phase: str = "manual",
        turn_id: str | None = None,
        preloaded: ContextLoadResult | None = None,
    ) -> ContextSnapshot:
        result = preloaded if preloaded is not None else await self.load()
        entries = list(result.entries)

        environment: dict[str, str] = {}
        if self._settings.snapshot_include_environment:
            environment = {
                "PWD": os.getcwd(),
                "USER": os.environ.get("USER") or os.environ.get("USERNAME") or "unknown",
                "SHELL": os.environ.get("SHELL", ""),
            }

        snapshot = ContextSnapshot(
            phase=phase,
            turn_id=turn_id,
            entries=entries,
            working_directory=os.getcwd(),
            environment=environment,
            variables=dict(result.variables),
            hierarchy=HierarchyMetadata(
                levels=[e.path for e in entries],
                total_size=sum(len(e.content) for e in entries),
                file_count=len(entries),
                last_modified=max((e.last_modified or 0 for e in entries), default=0),
            ),
        )

        size = len(snapshot.to_json())
        if size > self._settings.snapshot_max_size:
            logger.warning(
                "Context snapshot is %d bytes (limit %d), truncating entries",
                size,
                self._settings.snapshot_max_size,
            )
            snapshot.entries = truncate_entries(entries, self._settings.snapshot_max_size)
            snapshot.truncated = True

        self._baseline = snapshot
        if self._bus is not None:
            self._bus.publish(
                Event(
                    type=CONTEXT_SNAPSHOT,
                    conversation_id=self._conversation_id,
                    turn_id=turn_id,
                    data={"phase": phase, "size": size, "snapshot": snapshot.model_dump(mode="json")},
                )
            )
        logger.debug(
            "Captured %s context snapshot: %d entries, %d bytes", phase, len(snapshot.entries), size
        )
        return snapshot

    def schedule_capture(
        self,
        phase: str,
        turn_id: str | None = None,
        preloaded: ContextLoadResult | None = None,
    ) -> asyncio.Task:
        """Capture in the background. Failures are logged, never raised."""
        task = asyncio.create_task(
            self._capture_logged(phase, turn_id, preloaded), name=f"coda-snapshot-{phase}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _capture_logged(
        self, phase: str, turn_id: str | None, preloaded: ContextLoadResult | None
    ) -> ContextSnapshot | None:
        try:
            return await self.capture(phase, turn_id, preloaded)
        except Exception:
            logger.exception("Background %s context snapshot failed", phase)
            return None

    async def drain(self) -> None:
        """Wait for outstanding background captures."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def restore(self, snapshot: ContextSnapshot) -> ContextSnapshot:
        """Adopt a persisted snapshot as the baseline for change detection."""
        if snapshot.working_directory and snapshot.working_directory != os.getcwd():
            logger.info(
                "Restored snapshot was taken in %s (current: %s)",
                snapshot.working_directory,
                os.getcwd(),
            )
        self._baseline = snapshot
        logger.info(
            "Context restored from snapshot taken %s (%d entries)",
            snapshot.timestamp.isoformat(),
            len(snapshot.entries),
        )
        return snapshot

    async def detect_changes(self) -> ContextChanges:
        """Diff the provider's current context against the baseline snapshot."""
        if self._baseline is None:
            return ContextChanges()

        current = (await self.load()).entries
        previous = {e.path: e.content for e in self._baseline.entries}
        current_paths = {e.path for e in current}

        return ContextChanges(
            added=[e.path for e in current if e.path not in previous],
            modified=[
                e.path
                for e in current
                if e.path in previous and previous[e.path] != e.content
            ],
            removed=[p for p in previous if p not in current_paths],
        )

    @staticmethod
    def render_system_section(result: ContextLoadResult) -> str:
        """Project context block appended to the system prompt."""
        if not result.entries and not result.variables:
            return ""
        parts = ["## Project Context"]
        for entry in result.entries:
            parts.append(f"### {entry.path}\n\n{entry.content.strip()}")
        if result.variables:
            lines = "\n".join(f"- {k}: {v}" for k, v in sorted(result.variables.items()))
            parts.append(f"### Variables\n\n{lines}")
        return "\n\n".join(parts)

"""Project context plumbing -- snapshots around turns.

Public API:
    ContextSnapshotBridge - capture/restore/diff context snapshots
    ContextProvider       - protocol for the external context loader

Schemas:
    ContextEntry, ContextLoadResult, ContextSnapshot, ContextChanges
"""

from coda.context.snapshot import (
    ContextChanges,
    ContextEntry,
    ContextLoadResult,
    ContextProvider,
    ContextSnapshot,
    ContextSnapshotBridge,
    HierarchyMetadata,
)

__all__ = [
    "ContextChanges",
    "ContextEntry",
    "ContextLoadResult",
    "ContextProvider",
    "ContextSnapshot",
    "ContextSnapshotBridge",
    "HierarchyMetadata",
]

"""Session-scoped, append-only command history and undo."""

from __future__ import annotations

from collections.abc import Iterator

import structlog

from Stockwright.catalog import DEFAULT_CATALOG, ToolCatalog
from Stockwright.errors import NothingToUndo
from Stockwright.executor import CommandExecutor
from Stockwright.metrics import inc_counter
from Stockwright.schemas import CommandLogEntry, ExecutionResult

log = structlog.get_logger()


class CommandLog:
    """Entries in execution order. Entries are never edited or removed.

    An undo is recorded as a new entry whose ``undoes`` names its target;
    whether an entry has been undone is derived from those records.
    """

    def __init__(self, catalog: ToolCatalog = DEFAULT_CATALOG) -> None:
        self._entries: list[CommandLogEntry] = []
        self._undone: set[str] = set()
        self._catalog = catalog

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CommandLogEntry]:
        return iter(self._entries)

    @property
    def entries(self) -> tuple[CommandLogEntry, ...]:
        return tuple(self._entries)

    def append(self, entry: CommandLogEntry) -> None:
        self._entries.append(entry)
        if entry.undoes is not None and entry.success:
            self._undone.add(entry.undoes)

    def is_undone(self, entry_id: str) -> bool:
        return entry_id in self._undone

    def undo_candidate(self) -> CommandLogEntry:
        """Most recent successful state-changing entry that has not been undone.

        Read-only queries, failures and undo records are skipped. Raises
        ``NothingToUndo`` when there is no such entry or it has no inverse.
        """
        for entry in reversed(self._entries):
            if not entry.success or entry.undoes is not None:
                continue
            if not self._catalog.get(entry.action).mutating:
                continue
            if entry.id in self._undone:
                continue
            if not entry.reversible or entry.reverse_action is None:
                raise NothingToUndo(
                    f"The last change ({entry.action.value.replace('_', ' ')}) cannot be undone."
                )
            return entry
        raise NothingToUndo()


async def undo_last(
    command_log: CommandLog,
    executor: CommandExecutor,
    *,
    raw_command: str = "undo",
) -> tuple[ExecutionResult, CommandLogEntry | None]:
    """Execute the inverse of the latest undoable entry and log it as a new entry.

    A failed undo is logged too, but leaves its target undoable.
    """
    target = command_log.undo_candidate()
    reverse = target.reverse_action
    if reverse is None:
        raise NothingToUndo()
    result, entry = await executor.execute(reverse, raw_command=raw_command, undoes=target.id)
    if entry is not None:
        command_log.append(entry)
    inc_counter("undo.ok" if result.success else "undo.failed")
    log.info(
        "undo.completed",
        target_id=target.id,
        action=reverse.action.value,
        success=result.success,
    )
    return result, entry

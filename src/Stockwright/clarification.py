"""Multi-turn collection of missing arguments for one pending command.

States: ``idle -> collecting -> {completed, abandoned}``. At most one
``PendingCommand`` exists per manager (one manager per session), and a
terminal transition releases it immediately.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from Stockwright.catalog import DEFAULT_CATALOG, ToolCatalog, ToolName, merge_parameters
from Stockwright.metrics import inc_counter
from Stockwright.schemas import ExtractionResult

log = structlog.get_logger()

EXPIRED_REASON = "clarification expired"


class ClarifyState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class PendingCommand:
    action: ToolName
    collected_parameters: dict[str, Any]
    missing_required: list[str]
    intent_confidence: float
    created_at: float
    last_updated_at: float
    extraction_confidence: float = 0.0
    # Follow-up answers merged so far; opening the dialogue is turn zero
    turns: int = 0
    history: list[str] = field(default_factory=list)


def field_label(name: str) -> str:
    return name.removesuffix("_id").replace("_", " ")


class ClarificationManager:
    def __init__(
        self,
        catalog: ToolCatalog = DEFAULT_CATALOG,
        *,
        max_turns: int = 3,
        max_age_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._catalog = catalog
        self._max_turns = max_turns
        self._max_age = max_age_seconds
        self._clock = clock
        self._state = ClarifyState.IDLE
        self._pending: PendingCommand | None = None

    @property
    def state(self) -> ClarifyState:
        return self._state

    @property
    def pending(self) -> PendingCommand | None:
        return self._pending

    @property
    def is_collecting(self) -> bool:
        return self._state is ClarifyState.COLLECTING

    def open(
        self,
        action: ToolName,
        extraction: ExtractionResult,
        *,
        intent_confidence: float,
        raw_text: str = "",
    ) -> PendingCommand:
        if self.is_collecting:
            self.abandon("superseded")
        now = self._clock()
        params = merge_parameters(None, extraction.parameters)
        self._pending = PendingCommand(
            action=action,
            collected_parameters=params,
            missing_required=self._catalog.missing_required(action, params),
            intent_confidence=intent_confidence,
            extraction_confidence=extraction.confidence,
            created_at=now,
            last_updated_at=now,
            history=[raw_text] if raw_text else [],
        )
        self._state = ClarifyState.COLLECTING
        inc_counter("clarify.opened")
        log.info(
            "clarify.opened",
            action=action.value,
            missing=self._pending.missing_required,
            known=sorted(params),
        )
        return self._pending

    def merge(
        self,
        extraction: ExtractionResult,
        *,
        intent_confidence: float | None = None,
        raw_text: str = "",
    ) -> PendingCommand:
        """Fold a follow-up answer into the pending command.

        Supplied values fill or overwrite fields; nothing already collected is
        dropped. The stored intent confidence only ever rises.
        """
        pending = self._require_pending()
        pending.collected_parameters = merge_parameters(
            pending.collected_parameters, extraction.parameters
        )
        pending.missing_required = self._catalog.missing_required(
            pending.action, pending.collected_parameters
        )
        if intent_confidence is not None:
            pending.intent_confidence = max(pending.intent_confidence, intent_confidence)
        pending.extraction_confidence = extraction.confidence
        pending.turns += 1
        pending.last_updated_at = self._clock()
        if raw_text:
            pending.history.append(raw_text)
        log.info(
            "clarify.merged",
            action=pending.action.value,
            turns=pending.turns,
            missing=pending.missing_required,
        )
        return pending

    def complete(self) -> PendingCommand:
        pending = self._require_pending()
        self._pending = None
        self._state = ClarifyState.COMPLETED
        inc_counter("clarify.completed")
        log.info("clarify.completed", action=pending.action.value, turns=pending.turns)
        return pending

    def abandon(self, reason: str) -> PendingCommand | None:
        pending = self._pending
        if pending is None:
            return None
        self._pending = None
        self._state = ClarifyState.ABANDONED
        inc_counter("clarify.abandoned")
        log.info(
            "clarify.abandoned", action=pending.action.value, reason=reason, turns=pending.turns
        )
        return pending

    def is_stale(self) -> bool:
        pending = self._pending
        if pending is None:
            return False
        if pending.turns >= self._max_turns:
            return True
        return (self._clock() - pending.created_at) > self._max_age

    def expire_if_stale(self) -> PendingCommand | None:
        """Abandon the pending command when it has used up its turns or time."""
        if not self.is_stale():
            return None
        return self.abandon(EXPIRED_REASON)

    def build_prompt(self, pending: PendingCommand | None = None) -> str:
        pending = pending or self._require_pending()
        spec = self._catalog.get(pending.action)
        missing = [field_label(f) for f in pending.missing_required]
        verb = pending.action.value.replace("_", " ")
        if missing:
            ask = f"To {verb} I still need: {', '.join(missing)}."
        else:
            ask = f"Please confirm the details to {verb}."
        known = [
            f"{field_label(k)}={v}"
            for k, v in pending.collected_parameters.items()
            if k in spec.argument_schema
        ]
        if known:
            ask += f" So far: {', '.join(known)}."
        return ask

    def _require_pending(self) -> PendingCommand:
        if self._pending is None:
            raise RuntimeError("no pending command")
        return self._pending

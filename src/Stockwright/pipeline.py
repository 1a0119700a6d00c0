"""Turn processing: text in, one well-formed turn result out.

raw text -> IntentClassifier -> ParameterExtractor -> ConfidenceGate
         -> (ClarificationManager | CommandExecutor) -> CommandLog

All per-session state lives on ``CommandSession``; the pipeline itself holds
only collaborators and is shared between sessions.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field

import structlog
from structlog.contextvars import bound_contextvars

from Stockwright.catalog import DEFAULT_CATALOG, ToolCatalog, ToolName
from Stockwright.clarification import EXPIRED_REASON, ClarificationManager, PendingCommand
from Stockwright.classifier import IntentClassifier
from Stockwright.command_log import CommandLog, undo_last
from Stockwright.config import Settings
from Stockwright.context import ConversationContext
from Stockwright.errors import NothingToUndo
from Stockwright.executor import CommandExecutor
from Stockwright.extractor import ParameterExtractor
from Stockwright.gate import ConfidenceGate, GateDecision, Route
from Stockwright.gateway import CompletionGateway, CompletionOptions
from Stockwright.ids import new_entry_id
from Stockwright.metrics import inc_counter, observe_histogram
from Stockwright.schemas import (
    ClarifyTurn,
    ClassificationResult,
    CommandLogEntry,
    DebugInfo,
    ExecutedTurn,
    ExecutionResult,
    ExtractionResult,
    RejectedTurn,
    ToolCall,
    TurnResult,
)
from Stockwright.store import InventoryStore

log = structlog.get_logger()

UNDO_COMMANDS = frozenset({"undo", "undo last", "undo that", "undo last command"})
CANCEL_COMMANDS = frozenset({"cancel", "never mind", "nevermind", "forget it", "stop"})
SUPERSEDED_REASON = "superseded by a newer command"


@dataclass
class CommandSession:
    """Everything one user's pipeline owns. Not shared across sessions."""

    session_id: str
    clarification: ClarificationManager
    log: CommandLog
    context: ConversationContext
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    in_flight: asyncio.Task | None = None


class CommandPipeline:
    def __init__(
        self,
        *,
        classifier: IntentClassifier,
        extractor: ParameterExtractor,
        executor: CommandExecutor,
        gate: ConfidenceGate | None = None,
        catalog: ToolCatalog = DEFAULT_CATALOG,
        settings: Settings | None = None,
    ) -> None:
        self.classifier = classifier
        self.extractor = extractor
        self.executor = executor
        self.catalog = catalog
        self.settings = settings or Settings()
        self.gate = gate or ConfidenceGate(
            intent_threshold=self.settings.gate_intent_threshold,
            extraction_threshold=self.settings.gate_extraction_threshold,
        )

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        gateway: CompletionGateway,
        store: InventoryStore,
        catalog: ToolCatalog = DEFAULT_CATALOG,
    ) -> CommandPipeline:
        options = CompletionOptions.from_settings(settings)
        classifier_options = CompletionOptions(
            temperature=options.temperature,
            max_output_tokens=min(options.max_output_tokens, 200),
            timeout_ms=options.timeout_ms,
        )
        return cls(
            classifier=IntentClassifier(gateway, catalog, classifier_options),
            extractor=ParameterExtractor(gateway, catalog, options),
            executor=CommandExecutor(store, catalog),
            catalog=catalog,
            settings=settings,
        )

    def new_session(self, session_id: str | None = None) -> CommandSession:
        s = self.settings
        return CommandSession(
            session_id=session_id or new_entry_id(),
            clarification=ClarificationManager(
                self.catalog,
                max_turns=s.clarify_max_turns,
                max_age_seconds=s.clarify_max_age_seconds,
            ),
            log=CommandLog(self.catalog),
            context=ConversationContext(
                max_messages=s.context_max_messages, ttl_seconds=s.context_ttl_seconds
            ),
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def submit(self, session: CommandSession, text: str) -> TurnResult:
        """Process ``text``, cancelling any turn still in flight for this session.

        The cancelled turn resolves to a ``rejected`` result instead of raising,
        unless its store call had already started: that turn still reports
        what the store did.
        """
        previous = session.in_flight
        if previous is not None and not previous.done():
            previous.cancel()
            inc_counter("pipeline.turn.superseded")
        task = asyncio.ensure_future(self.process(session, text))
        session.in_flight = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            log.info("pipeline.turn.superseded", session_id=session.session_id)
            return RejectedTurn(reason=SUPERSEDED_REASON, debug=DebugInfo(raw_command=text))
        finally:
            if session.in_flight is task:
                session.in_flight = None

    async def process(self, session: CommandSession, text: str) -> TurnResult:
        """Run one turn to a terminal outcome. Turns of a session never interleave."""
        async with session.lock:
            with bound_contextvars(session_id=session.session_id):
                start = time.perf_counter()
                outcome = await self._turn(session, text)
                dur_ms = math.trunc((time.perf_counter() - start) * 1000)
                inc_counter(f"pipeline.turn.{outcome.type}")
                observe_histogram("pipeline.turn.ms", dur_ms)
                debug = outcome.debug
                log.info(
                    "pipeline.turn.completed",
                    type=outcome.type,
                    duration_ms=dur_ms,
                    used_fallback=bool(debug and debug.used_fallback),
                    log_size=len(session.log),
                )
                return outcome

    # ------------------------------------------------------------------
    # Turn stages
    # ------------------------------------------------------------------

    async def _turn(self, session: CommandSession, text: str) -> TurnResult:
        raw = text.strip()
        if not raw:
            return RejectedTurn(reason="empty command", debug=DebugInfo(raw_command=text))
        lowered = raw.lower().rstrip(".!")
        if lowered in UNDO_COMMANDS:
            return await self._undo(session, raw)

        clar = session.clarification
        if clar.is_collecting and lowered in CANCEL_COMMANDS:
            clar.abandon("cancelled by user")
            return RejectedTurn(reason="cancelled", debug=DebugInfo(raw_command=raw))
        # An old question nobody answered in time does not capture this input
        if clar.expire_if_stale() is not None:
            log.info("pipeline.pending_expired", raw_preview=raw[:60])

        pending = clar.pending
        stage1, fallback = await self.classifier.classify(
            raw,
            context_summary=session.context.summary(),
            pending_action=pending.action.value if pending else None,
            pending_missing=pending.missing_required if pending else None,
        )

        if fallback is not None:
            # Stage 2 is not attempted but is reported as degraded too
            stage2 = ExtractionResult(confidence=0.0)
            if pending is not None:
                spec = self.catalog.get(pending.action)
                stage2 = ExtractionResult(
                    parameters=dict(pending.collected_parameters),
                    confidence=0.0,
                    missing_required=spec.required_fields,
                )
            elif stage1.tool is not None:
                stage2 = ExtractionResult(
                    confidence=0.0,
                    missing_required=self.catalog.get(stage1.tool).required_fields,
                )
            debug = DebugInfo(
                stage1=stage1,
                stage2=stage2,
                used_fallback=True,
                fallback_reason=fallback,
                raw_command=raw,
            )
            decision = self._decide(stage1, stage2, used_fallback=True)
            return RejectedTurn(reason=decision.reason, debug=debug)

        if pending is not None:
            superseding = (
                stage1.tool is not None
                and stage1.tool != pending.action
                and stage1.confidence >= self.gate.intent_threshold
            )
            if superseding:
                clar.abandon("superseded")
            else:
                return await self._follow_up(session, raw, stage1, pending)

        return await self._fresh(session, raw, stage1)

    async def _fresh(
        self, session: CommandSession, raw: str, stage1: ClassificationResult
    ) -> TurnResult:
        tool = stage1.tool
        if tool is None:
            decision = self._decide(stage1, None)
            debug = DebugInfo(stage1=stage1, raw_command=raw)
            if decision.route is Route.REJECT:
                return RejectedTurn(reason=decision.reason, debug=debug)
            return ClarifyTurn(
                prompt=(
                    "I couldn't tell which inventory operation you meant. "
                    "Try e.g. 'add 50 bolts to warehouse-1' or 'check stock of widget-A'."
                ),
                debug=debug,
            )

        spec = self.catalog.get(tool)
        stage2, fallback = await self.extractor.extract(raw, spec)
        stage2 = self._with_references(session, raw, tool, stage2)
        debug = DebugInfo(
            stage1=stage1,
            stage2=stage2,
            used_fallback=fallback is not None,
            fallback_reason=fallback,
            raw_command=raw,
        )
        decision = self._decide(stage1, stage2, used_fallback=fallback is not None)
        if decision.route is Route.REJECT:
            return RejectedTurn(reason=decision.reason, debug=debug)
        if decision.should_execute:
            call = ToolCall(action=tool, parameters=stage2.parameters)
            return await self._execute(session, call, raw, debug)

        pending = session.clarification.open(
            tool, stage2, intent_confidence=stage1.confidence, raw_text=raw
        )
        return ClarifyTurn(
            prompt=session.clarification.build_prompt(pending),
            action=tool,
            missing_fields=list(pending.missing_required),
            known_parameters=dict(pending.collected_parameters),
            debug=debug,
        )

    async def _follow_up(
        self,
        session: CommandSession,
        raw: str,
        stage1: ClassificationResult,
        pending: PendingCommand,
    ) -> TurnResult:
        clar = session.clarification
        spec = self.catalog.get(pending.action)
        stage2, fallback = await self.extractor.extract(
            raw, spec, known=pending.collected_parameters
        )
        # Confidence the user still means the pending action
        if stage1.tool == pending.action:
            intent = max(pending.intent_confidence, stage1.confidence)
        else:
            intent = pending.intent_confidence
        effective = ClassificationResult(
            action=pending.action.value,
            confidence=intent,
            reasoning=stage1.reasoning or "answer to pending question",
        )
        if fallback is not None:
            debug = DebugInfo(
                stage1=effective,
                stage2=stage2,
                used_fallback=True,
                fallback_reason=fallback,
                raw_command=raw,
            )
            decision = self._decide(effective, stage2, used_fallback=True)
            return RejectedTurn(reason=decision.reason, debug=debug)

        stage2 = self._with_references(session, raw, pending.action, stage2)
        pending = clar.merge(stage2, intent_confidence=intent, raw_text=raw)
        merged = ExtractionResult(
            parameters=dict(pending.collected_parameters),
            confidence=stage2.confidence,
            missing_required=list(pending.missing_required),
        )
        debug = DebugInfo(stage1=effective, stage2=merged, raw_command=raw)
        decision = self._decide(effective, merged, follow_up=True)
        if decision.should_execute:
            done = clar.complete()
            call = ToolCall(action=done.action, parameters=done.collected_parameters)
            return await self._execute(session, call, " / ".join(done.history), debug)
        if decision.route is Route.REJECT:
            clar.abandon(decision.reason)
            return RejectedTurn(reason=decision.reason, debug=debug)
        if clar.is_stale():
            clar.abandon(EXPIRED_REASON)
            return RejectedTurn(reason=EXPIRED_REASON, debug=debug)
        return ClarifyTurn(
            prompt=clar.build_prompt(pending),
            action=pending.action,
            missing_fields=list(pending.missing_required),
            known_parameters=dict(pending.collected_parameters),
            debug=debug,
        )

    def _decide(
        self,
        stage1: ClassificationResult,
        stage2: ExtractionResult | None,
        *,
        used_fallback: bool = False,
        follow_up: bool = False,
    ) -> GateDecision:
        decision = self.gate.decide(stage1, stage2, used_fallback=used_fallback)
        inc_counter(f"gate.{decision.route.value}")
        log.info(
            "gate.decided",
            route=decision.route.value,
            reason=decision.reason,
            follow_up=follow_up,
        )
        return decision

    def _with_references(
        self, session: CommandSession, raw: str, tool: ToolName, stage2: ExtractionResult
    ) -> ExtractionResult:
        spec = self.catalog.get(tool)
        resolved = session.context.resolve_references(
            raw, stage2.parameters, spec.argument_schema
        )
        if resolved == stage2.parameters:
            return stage2
        log.info(
            "context.references_resolved",
            action=tool.value,
            filled=sorted(set(resolved) - set(stage2.parameters)),
        )
        return ExtractionResult(
            parameters=resolved,
            confidence=stage2.confidence,
            missing_required=self.catalog.missing_required(tool, resolved),
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _execute(
        self, session: CommandSession, call: ToolCall, raw: str, debug: DebugInfo
    ) -> TurnResult:
        task = asyncio.ensure_future(self.executor.execute(call, raw_command=raw))
        try:
            result, entry = await asyncio.shield(task)
        except asyncio.CancelledError:
            # Once dispatched the store call finishes and its outcome is reported
            result, entry = await task
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            inc_counter("pipeline.execute.outlived_cancel")
            log.info("pipeline.execute.outlived_cancel", action=call.action.value)
        self._record(session, raw, call, result, entry)
        if result.success and entry is not None:
            return ExecutedTurn(result=result, log_entry=entry, debug=debug)
        return RejectedTurn(reason=result.message, result=result, log_entry=entry, debug=debug)

    def _record(
        self,
        session: CommandSession,
        raw: str,
        call: ToolCall,
        result: ExecutionResult,
        entry: CommandLogEntry | None,
    ) -> None:
        if entry is not None:
            session.log.append(entry)
        session.context.add(
            raw,
            action=call.action.value,
            parameters=entry.parameters if entry is not None else call.parameters,
            success=result.success,
        )

    async def _undo(self, session: CommandSession, raw: str) -> TurnResult:
        debug = DebugInfo(raw_command=raw)
        try:
            result, entry = await undo_last(session.log, self.executor, raw_command=raw)
        except NothingToUndo as e:
            inc_counter("undo.nothing")
            result = ExecutionResult(success=False, error_kind=e.kind, message=e.message)
            return RejectedTurn(reason=e.message, result=result, debug=debug)
        if result.success and entry is not None:
            session.context.add(
                raw, action=entry.action.value, parameters=entry.parameters, success=True
            )
            return ExecutedTurn(result=result, log_entry=entry, debug=debug)
        return RejectedTurn(reason=result.message, result=result, log_entry=entry, debug=debug)

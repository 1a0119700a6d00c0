"""Stage 1: decide which catalog operation the user means."""

from __future__ import annotations

import structlog

from Stockwright.catalog import CLARIFY_ACTION, DEFAULT_CATALOG, NONE_ACTION, ToolCatalog
from Stockwright.errors import GatewayError
from Stockwright.gateway import CompletionGateway, CompletionOptions
from Stockwright.metrics import inc_counter
from Stockwright.prompts import build_classifier_messages
from Stockwright.schemas import ClassificationResult, ClassifierReply

log = structlog.get_logger()

UPSTREAM_UNAVAILABLE = "upstream unavailable"
# Ceiling applied when the model names an operation outside the catalog
UNKNOWN_ACTION_CONFIDENCE = 0.3


def degraded_classification() -> ClassificationResult:
    return ClassificationResult(
        action=CLARIFY_ACTION, confidence=0.0, reasoning=UPSTREAM_UNAVAILABLE
    )


class IntentClassifier:
    def __init__(
        self,
        gateway: CompletionGateway,
        catalog: ToolCatalog = DEFAULT_CATALOG,
        options: CompletionOptions | None = None,
    ) -> None:
        self._gateway = gateway
        self._catalog = catalog
        self._options = options or CompletionOptions(max_output_tokens=200)

    async def classify(
        self,
        text: str,
        *,
        context_summary: str = "",
        pending_action: str | None = None,
        pending_missing: list[str] | None = None,
    ) -> tuple[ClassificationResult, str | None]:
        """Return the classification and, when degraded, why.

        Gateway failures never propagate: the caller gets a zero-confidence
        ``clarify`` result and a non-None fallback reason instead.
        """
        messages = build_classifier_messages(
            text,
            self._catalog,
            context_summary=context_summary,
            pending_action=pending_action,
            pending_missing=pending_missing,
        )
        try:
            reply = await self._gateway.complete_structured(
                messages, ClassifierReply, self._options
            )
        except GatewayError as e:
            inc_counter("classifier.fallback")
            log.warning("classifier.fallback", error_kind=e.kind.value, error=str(e))
            return degraded_classification(), f"{e.kind.value}: {e}"

        result = self._normalize(reply)
        inc_counter("classifier.ok")
        log.info(
            "classifier.completed",
            action=result.action,
            confidence=result.confidence,
            raw_action=reply.action,
        )
        return result, None

    def _normalize(self, reply: ClassifierReply) -> ClassificationResult:
        raw = reply.action.strip().lower()
        if raw in (NONE_ACTION, CLARIFY_ACTION):
            return ClassificationResult(
                action=raw, confidence=reply.confidence, reasoning=reply.reasoning
            )
        tool = self._catalog.resolve(reply.action)
        if tool is None:
            inc_counter("classifier.unknown_action")
            log.warning("classifier.unknown_action", raw_action=reply.action)
            return ClassificationResult(
                action=CLARIFY_ACTION,
                confidence=min(reply.confidence, UNKNOWN_ACTION_CONFIDENCE),
                reasoning=f"unrecognized operation '{reply.action}'",
            )
        return ClassificationResult(
            action=tool.value, confidence=reply.confidence, reasoning=reply.reasoning
        )

"""Confidence gate: route a turn to execute, clarify or reject."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from Stockwright.schemas import ClassificationResult, ExtractionResult


class Route(str, Enum):
    EXECUTE = "execute"
    CLARIFY = "clarify"
    REJECT = "reject"


@dataclass(frozen=True)
class GateDecision:
    route: Route
    reason: str

    @property
    def should_execute(self) -> bool:
        return self.route is Route.EXECUTE


@dataclass(frozen=True)
class ConfidenceGate:
    intent_threshold: float = 0.7
    extraction_threshold: float = 0.7

    def decide(
        self,
        stage1: ClassificationResult,
        stage2: ExtractionResult | None,
        *,
        used_fallback: bool = False,
    ) -> GateDecision:
        """Pure routing decision.

        ``stage2`` is None when Stage 1 did not name a catalog operation.
        Execution requires a catalog operation, both confidences at or above
        their thresholds and no missing required field.
        """
        if stage1.is_none:
            return GateDecision(Route.REJECT, "no inventory operation recognized")
        if used_fallback:
            return GateDecision(Route.REJECT, "language model unavailable")
        if stage1.is_clarify:
            return GateDecision(Route.CLARIFY, "model asked which operation was meant")
        if stage1.tool is None or stage2 is None:
            return GateDecision(Route.CLARIFY, "operation unclear")
        if stage1.confidence < self.intent_threshold:
            return GateDecision(
                Route.CLARIFY,
                f"intent confidence {stage1.confidence:.2f} below {self.intent_threshold:.2f}",
            )
        if stage2.confidence < self.extraction_threshold:
            return GateDecision(
                Route.CLARIFY,
                f"extraction confidence {stage2.confidence:.2f} "
                f"below {self.extraction_threshold:.2f}",
            )
        if stage2.missing_required:
            return GateDecision(
                Route.CLARIFY, "missing " + ", ".join(stage2.missing_required)
            )
        return GateDecision(Route.EXECUTE, "confident and complete")

# schemas.py
"""Records that flow through one pipeline turn.

Model replies (``ClassifierReply``, ``ExtractorReply``) are parsed leniently.
Everything the core produces itself is frozen.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

from Stockwright.catalog import CLARIFY_ACTION, NONE_ACTION, ToolName
from Stockwright.errors import ErrorKind


def _clamp_confidence(v: Any) -> float:
    if isinstance(v, bool) or not isinstance(v, int | float | str):
        raise ValueError("confidence must be a number")
    f = float(v)
    # Some models answer on a 0-100 scale
    if 1.0 < f <= 100.0:
        f = f / 100.0
    return min(1.0, max(0.0, f))


# -----------------------------
# Model reply shapes
# -----------------------------


class ClassifierReply(BaseModel):
    action: str = Field(min_length=1)
    confidence: float
    reasoning: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        return _clamp_confidence(v)

    model_config = dict(extra="ignore")


class ExtractorReply(BaseModel):
    parameters: dict[str, Any] = Field(default_factory=dict)
    confidence: float
    # The model's own list is accepted but never trusted

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        return _clamp_confidence(v)

    model_config = dict(extra="ignore")


# -----------------------------
# Stage outputs
# -----------------------------


class ClassificationResult(BaseModel):
    action: str
    confidence: float = Field(ge=0, le=1)
    reasoning: str = ""

    model_config = dict(frozen=True, extra="forbid")

    @property
    def tool(self) -> ToolName | None:
        try:
            return ToolName(self.action)
        except ValueError:
            return None

    @property
    def is_none(self) -> bool:
        return self.action == NONE_ACTION

    @property
    def is_clarify(self) -> bool:
        return self.action == CLARIFY_ACTION


class ExtractionResult(BaseModel):
    parameters: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(ge=0, le=1)
    missing_required: list[str] = Field(default_factory=list)

    model_config = dict(frozen=True, extra="forbid")


# -----------------------------
# Execution and history
# -----------------------------


class ToolCall(BaseModel):
    action: ToolName
    parameters: dict[str, Any] = Field(default_factory=dict)

    model_config = dict(frozen=True, extra="forbid")


class ExecutionResult(BaseModel):
    success: bool
    data: Any = None
    error_kind: ErrorKind | None = None
    message: str

    model_config = dict(frozen=True, extra="forbid")


class CommandLogEntry(BaseModel):
    id: str
    timestamp_ms: int
    raw_command: str
    action: ToolName
    parameters: dict[str, Any]
    success: bool
    result_summary: str
    reversible: bool = False
    reverse_action: ToolCall | None = None
    # Set on entries that record an undo; names the entry being reversed
    undoes: str | None = None

    model_config = dict(frozen=True, extra="forbid")


class DebugInfo(BaseModel):
    stage1: ClassificationResult | None = None
    stage2: ExtractionResult | None = None
    used_fallback: bool = False
    fallback_reason: str | None = None
    raw_command: str

    model_config = dict(frozen=True, extra="forbid")


# -----------------------------
# Turn results handed to the renderer
# -----------------------------


class ExecutedTurn(BaseModel):
    type: Literal["executed"] = "executed"
    result: ExecutionResult
    log_entry: CommandLogEntry
    debug: DebugInfo | None = None

    model_config = dict(frozen=True)


class ClarifyTurn(BaseModel):
    type: Literal["clarify"] = "clarify"
    prompt: str
    action: ToolName | None = None
    missing_fields: list[str] = Field(default_factory=list)
    known_parameters: dict[str, Any] = Field(default_factory=dict)
    debug: DebugInfo | None = None

    model_config = dict(frozen=True)


class RejectedTurn(BaseModel):
    type: Literal["rejected"] = "rejected"
    reason: str
    result: ExecutionResult | None = None
    log_entry: CommandLogEntry | None = None
    debug: DebugInfo | None = None

    model_config = dict(frozen=True)


TurnResult = Annotated[ExecutedTurn | ClarifyTurn | RejectedTurn, Field(discriminator="type")]

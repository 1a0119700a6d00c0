"""Error taxonomy for the command pipeline.

Two families:

- ``GatewayError`` and subclasses come from the language-model layer. They are
  caught by the classifier and extractor and turned into degraded results.
- ``CommandError`` and subclasses come from validation, the inventory store
  and undo. The executor turns them into ``ExecutionResult`` values carrying a
  stable ``ErrorKind`` and a message fit to show the user.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    upstream_timeout = "upstream_timeout"
    upstream_error = "upstream_error"
    malformed_response = "malformed_response"
    validation_error = "validation_error"
    not_found = "not_found"
    execution_failure = "execution_failure"
    nothing_to_undo = "nothing_to_undo"


class GatewayError(Exception):
    kind: ErrorKind = ErrorKind.upstream_error


class UpstreamTimeout(GatewayError):
    kind = ErrorKind.upstream_timeout

    def __init__(self, timeout_ms: int):
        super().__init__(f"language model did not respond within {timeout_ms} ms")
        self.timeout_ms = timeout_ms


class UpstreamError(GatewayError):
    kind = ErrorKind.upstream_error

    def __init__(self, status: int | None, body: str = ""):
        label = f"status {status}" if status is not None else "transport failure"
        super().__init__(f"language model error ({label}): {body[:200]}")
        self.status = status
        self.body = body


class MalformedResponse(GatewayError):
    kind = ErrorKind.malformed_response

    def __init__(self, detail: str, raw_preview: str = ""):
        super().__init__(detail)
        self.raw_preview = raw_preview[:500]


class CommandError(Exception):
    kind: ErrorKind = ErrorKind.execution_failure

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CommandError):
    kind = ErrorKind.validation_error


class NotFound(CommandError):
    kind = ErrorKind.not_found

    def __init__(self, entity: str, ref: str, suggestion: str | None = None):
        msg = f"{entity.capitalize()} '{ref}' was not found."
        if suggestion is None:
            suggestion = f"Check the {entity} id, or create the {entity} first."
        super().__init__(f"{msg} {suggestion}")
        self.entity = entity
        self.ref = ref
        self.suggestion = suggestion


class ExecutionFailure(CommandError):
    kind = ErrorKind.execution_failure


class NothingToUndo(CommandError):
    kind = ErrorKind.nothing_to_undo

    def __init__(self, message: str = "There is nothing to undo."):
        super().__init__(message)

"""Short-lived conversation memory used to resolve back-references.

"add 5 more" or "same again to bay-3" refer to what the user touched last.
Only the product and warehouse are carried over, and only when the text
contains an explicit back-reference word.
"""

from __future__ import annotations

import re
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import orjson

from Stockwright.catalog import is_present

_REFERENCE_RE = re.compile(r"\b(same|again|more|another|it|that|those|there)\b", re.IGNORECASE)


@dataclass(frozen=True)
class ContextMessage:
    timestamp: float
    user_input: str
    action: str | None = None
    parameters: Mapping[str, Any] = field(default_factory=dict)
    success: bool | None = None


class ConversationContext:
    def __init__(
        self,
        *,
        max_messages: int = 10,
        ttl_seconds: float = 1800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._messages: deque[ContextMessage] = deque(maxlen=max_messages)
        self._ttl = ttl_seconds
        self._clock = clock
        self.last_product: str | None = None
        self.last_warehouse: str | None = None
        self._last_touched = 0.0

    def add(
        self,
        user_input: str,
        *,
        action: str | None = None,
        parameters: Mapping[str, Any] | None = None,
        success: bool | None = None,
    ) -> None:
        now = self._clock()
        self._prune(now)
        params = dict(parameters or {})
        self._messages.append(ContextMessage(now, user_input, action, params, success))
        self._last_touched = now
        if success:
            product = params.get("product_id")
            warehouse = params.get("warehouse_id") or params.get("to_warehouse_id")
            if is_present(product):
                self.last_product = str(product)
            if is_present(warehouse):
                self.last_warehouse = str(warehouse)

    def messages(self) -> list[ContextMessage]:
        self._prune(self._clock())
        return list(self._messages)

    def summary(self, last: int = 3) -> str:
        recent = self.messages()[-last:]
        if not recent:
            return ""
        lines = []
        for m in recent:
            params = orjson.dumps(dict(m.parameters), default=str).decode()
            lines.append(f'- "{m.user_input}" -> {m.action or "unknown"} {params}')
        out = "Recent commands:\n" + "\n".join(lines)
        if self.last_product:
            out += f"\nLast product: {self.last_product}"
        if self.last_warehouse:
            out += f"\nLast warehouse: {self.last_warehouse}"
        return out

    def resolve_references(
        self, text: str, parameters: Mapping[str, Any], schema_fields: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Fill absent product/warehouse fields from the last command.

        Only fields in ``schema_fields`` are filled, and explicit values win.
        """
        resolved = dict(parameters)
        self._prune(self._clock())
        if not _REFERENCE_RE.search(text or ""):
            return resolved
        if (
            "product_id" in schema_fields
            and self.last_product
            and not is_present(resolved.get("product_id"))
        ):
            resolved["product_id"] = self.last_product
        if (
            "warehouse_id" in schema_fields
            and self.last_warehouse
            and not is_present(resolved.get("warehouse_id"))
        ):
            resolved["warehouse_id"] = self.last_warehouse
        return resolved

    def clear(self) -> None:
        self._messages.clear()
        self.last_product = None
        self.last_warehouse = None

    def _prune(self, now: float) -> None:
        while self._messages and now - self._messages[0].timestamp > self._ttl:
            self._messages.popleft()
        if self._last_touched and now - self._last_touched > self._ttl:
            self.last_product = None
            self.last_warehouse = None

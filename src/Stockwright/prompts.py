"""System prompts and message builders for the two interpretation stages."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import orjson

from Stockwright.catalog import ToolCatalog, ToolSpec
from Stockwright.llm_utils import scrub_user_text

SYSTEM_CLASSIFIER = (
    "You classify commands for an inventory management system. "
    "Your ONLY job is to decide WHICH operation the user wants, not its details.\n"
    "\n"
    "Return ONLY one JSON object with keys:\n"
    "- action: exactly one operation name from OPERATIONS, or \"none\" when the text is not "
    "an inventory request, or \"clarify\" when it is an inventory request but too ambiguous "
    "to pick one operation\n"
    "- confidence: a number between 0 and 1\n"
    "- reasoning: one short sentence\n"
    "\n"
    "Rules:\n"
    "- Never invent operation names; only use OPERATIONS.\n"
    "- Adding, receiving or putting items into a location is add_stock.\n"
    "- Using, taking, consuming or scrapping items is remove_stock.\n"
    "- Moving items between two locations is transfer_stock.\n"
    "- Correcting a count up or down by a signed amount is adjust_stock.\n"
    "- Be confident when the intent is clear. Use confidence below 0.7 only when truly "
    "ambiguous.\n"
    "- No prose or markdown outside JSON.\n"
    "\n"
    "PENDING QUESTIONS:\n"
    "When a pending operation with missing fields is given, a short reply such as "
    "\"50\", \"warehouse-1\" or \"50 to warehouse-1\" ANSWERS that question: classify it as "
    "the pending operation. Only pick a different operation when the text clearly asks for "
    "something else.\n"
    "\n"
    "EXAMPLES:\n"
    'User: "add 5 M10 nuts to warehouse-1"\n'
    '→ {"action": "add_stock", "confidence": 0.95, "reasoning": "Receiving items."}\n'
    'User: "used 2 filters from van-1"\n'
    '→ {"action": "remove_stock", "confidence": 0.95, "reasoning": "Consuming items."}\n'
    'User: "move 10 bolts from warehouse-1 to van-2"\n'
    '→ {"action": "transfer_stock", "confidence": 0.95, "reasoning": "Moving stock."}\n'
    'User: "what bearings do we have?"\n'
    '→ {"action": "search_product", "confidence": 0.85, "reasoning": "Looking up items."}\n'
    'User: "what is running low?"\n'
    '→ {"action": "get_low_stock_items", "confidence": 0.9, "reasoning": "Low stock."}\n'
    'User: "what is the weather like?"\n'
    '→ {"action": "none", "confidence": 0.95, "reasoning": "Not an inventory request."}\n'
    'User: "sort out the bolts"\n'
    '→ {"action": "clarify", "confidence": 0.4, "reasoning": "Operation unclear."}\n'
)

SYSTEM_EXTRACTOR = (
    "You extract the arguments of ONE inventory operation from a user's command.\n"
    "\n"
    "Return ONLY one JSON object with keys:\n"
    "- parameters: object whose keys are argument names from SCHEMA\n"
    "- confidence: a number between 0 and 1 for how sure you are of the values\n"
    "\n"
    "Rules:\n"
    "- Only use argument names from SCHEMA. Never invent values that the user did not say.\n"
    "- Leave an argument out (or null) when the text does not supply it.\n"
    "- Integers must be JSON numbers, not words (\"ten\" → 10).\n"
    "- Keep product and warehouse ids exactly as written (e.g. \"widget-A\", \"warehouse-1\").\n"
    "- For remove_stock and add_stock, quantity is always positive.\n"
    "- For adjust_stock, quantity_change is negative when stock goes down.\n"
    "- items for create_parts_list is a list of {\"product_id\", \"quantity\"} objects.\n"
    "- When KNOWN values are given, the user is answering a follow-up question: extract "
    "only what this message adds or changes.\n"
    "- No prose or markdown outside JSON.\n"
    "\n"
    "EXAMPLES:\n"
    'Operation: transfer_stock. User: "transfer 10 units of widget-A from warehouse-1 to '
    'warehouse-2"\n'
    '→ {"parameters": {"product_id": "widget-A", "from_warehouse_id": "warehouse-1", '
    '"to_warehouse_id": "warehouse-2", "quantity": 10}, "confidence": 0.95}\n'
    'Operation: add_stock. User: "add some bolts"\n'
    '→ {"parameters": {"product_id": "bolts"}, "confidence": 0.9}\n'
    'Operation: add_stock. KNOWN: {"product_id": "bolts"}. User: "50 to warehouse-1"\n'
    '→ {"parameters": {"quantity": 50, "warehouse_id": "warehouse-1"}, "confidence": 0.9}\n'
)


def build_classifier_messages(
    text: str,
    catalog: ToolCatalog,
    *,
    context_summary: str = "",
    pending_action: str | None = None,
    pending_missing: list[str] | None = None,
) -> list[dict[str, str]]:
    parts = [f"OPERATIONS:\n{catalog.describe_operations()}"]
    if context_summary:
        parts.append(f"RECENT CONTEXT:\n{context_summary}")
    if pending_action:
        missing = ", ".join(pending_missing or []) or "none"
        parts.append(f"PENDING OPERATION:\n- action: {pending_action}\n- missing: {missing}")
    parts.append(f"USER:\n{scrub_user_text(text)}")
    return [
        {"role": "system", "content": SYSTEM_CLASSIFIER},
        {"role": "user", "content": "\n\n".join(parts)},
    ]


def build_extractor_messages(
    text: str,
    spec: ToolSpec,
    *,
    known: Mapping[str, Any] | None = None,
) -> list[dict[str, str]]:
    schema_json = orjson.dumps(spec.to_prompt_dict()).decode("utf-8")
    parts = [f"OPERATION: {spec.name.value}", f"SCHEMA:\n{schema_json}"]
    if spec.examples:
        parts.append("PHRASINGS:\n" + "\n".join(f"- {e}" for e in spec.examples))
    if known:
        parts.append(f"KNOWN:\n{orjson.dumps(dict(known), default=str).decode('utf-8')}")
    parts.append(f"USER:\n{scrub_user_text(text)}")
    return [
        {"role": "system", "content": SYSTEM_EXTRACTOR},
        {"role": "user", "content": "\n\n".join(parts)},
    ]

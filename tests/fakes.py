"""Test doubles shared by the pipeline, classifier and extractor tests."""

import asyncio
from typing import Any

from Stockwright.schemas import ClassifierReply

Reply = dict[str, Any] | Exception


class ScriptedGateway:
    """Stands in for the language model.

    Classifier and extractor replies are queued separately and handed out in
    order. A queued exception is raised instead of returned.
    """

    def __init__(
        self,
        classify: list[Reply] | None = None,
        extract: list[Reply] | None = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.classify = list(classify or [])
        self.extract = list(extract or [])
        self.delay = delay
        self.calls: list[tuple[str, list[dict[str, str]]]] = []
        self.cancelled = 0

    async def complete(self, messages, options=None) -> str:  # noqa: ANN001
        raise AssertionError("pipeline should only use complete_structured")

    async def complete_structured(self, messages, model, options=None):  # noqa: ANN001
        queue = self.classify if model is ClassifierReply else self.extract
        self.calls.append((model.__name__, messages))
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        if not queue:
            raise AssertionError(f"no scripted reply left for {model.__name__}")
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return model.model_validate(reply)

    def prompts(self, model_name: str) -> list[str]:
        return [m[-1]["content"] for name, m in self.calls if name == model_name]


def intent(action: str, confidence: float = 0.95) -> dict[str, Any]:
    return {"action": action, "confidence": confidence, "reasoning": "scripted"}


def args(confidence: float = 0.9, **parameters: Any) -> dict[str, Any]:
    return {"parameters": parameters, "confidence": confidence}


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

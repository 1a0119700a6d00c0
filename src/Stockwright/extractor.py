"""Stage 2: pull the chosen operation's arguments out of the text."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from Stockwright.catalog import DEFAULT_CATALOG, ToolCatalog, ToolSpec, merge_parameters
from Stockwright.errors import GatewayError
from Stockwright.gateway import CompletionGateway, CompletionOptions
from Stockwright.metrics import inc_counter
from Stockwright.prompts import build_extractor_messages
from Stockwright.schemas import ExtractionResult, ExtractorReply

log = structlog.get_logger()


class ParameterExtractor:
    def __init__(
        self,
        gateway: CompletionGateway,
        catalog: ToolCatalog = DEFAULT_CATALOG,
        options: CompletionOptions | None = None,
    ) -> None:
        self._gateway = gateway
        self._catalog = catalog
        self._options = options or CompletionOptions()

    async def extract(
        self,
        text: str,
        spec: ToolSpec,
        known: Mapping[str, Any] | None = None,
    ) -> tuple[ExtractionResult, str | None]:
        """Extract arguments for ``spec``, merged over ``known``.

        ``missing_required`` is always recomputed here from the merged
        parameters; whatever the model says is missing is ignored.
        """
        messages = build_extractor_messages(text, spec, known=known)
        try:
            reply = await self._gateway.complete_structured(
                messages, ExtractorReply, self._options
            )
        except GatewayError as e:
            inc_counter("extractor.fallback")
            log.warning(
                "extractor.fallback",
                action=spec.name.value,
                error_kind=e.kind.value,
                error=str(e),
            )
            degraded = ExtractionResult(
                parameters=merge_parameters(known, None),
                confidence=0.0,
                missing_required=spec.required_fields,
            )
            return degraded, f"{e.kind.value}: {e}"

        extracted = self._catalog.normalize_parameters(spec.name, reply.parameters)
        dropped = sorted(set(reply.parameters) - set(extracted))
        merged = merge_parameters(known, extracted)
        missing = self._catalog.missing_required(spec.name, merged)
        inc_counter("extractor.ok")
        log.info(
            "extractor.completed",
            action=spec.name.value,
            confidence=reply.confidence,
            fields=sorted(merged),
            missing=missing,
            dropped=dropped or None,
        )
        return (
            ExtractionResult(
                parameters=merged, confidence=reply.confidence, missing_required=missing
            ),
            None,
        )

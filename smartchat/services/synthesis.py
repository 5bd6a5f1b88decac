from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import re
from typing import Any, Iterable

from smartchat.agent.prompts import NO_DATA_ANSWER, build_synthesis_messages
from smartchat.domain.chat import ResultSet
from smartchat.services.model_gateway import ModelGateway


logger = logging.getLogger(__name__)

_IDENTIFIER_COLUMN_RE = re.compile(r"^(id|.+_id)$", re.IGNORECASE)


@dataclass
class SynthesisResult:
    answer: str
    missing: list[str] = field(default_factory=list)


def visible_rows(result: ResultSet) -> list[dict[str, Any]]:
    # Internal identifiers never reach the answer prompt.
    return [
        {key: value for key, value in row.items() if not _IDENTIFIER_COLUMN_RE.match(key)}
        for row in result.rows
    ]


def chunk_rows(rows: list[dict[str, Any]], size: int) -> list[list[dict[str, Any]]]:
    size = max(1, size)
    return [rows[start : start + size] for start in range(0, len(rows), size)]


def row_name(row: dict[str, Any], name_fields: Iterable[str]) -> str | None:
    for field_name in name_fields:
        value = row.get(field_name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class AnswerSynthesizer:
    def __init__(
        self,
        gateway: ModelGateway,
        *,
        chunk_size: int = 10,
        max_concurrency: int = 4,
        name_fields: Iterable[str] = ("name",),
    ) -> None:
        self._gateway = gateway
        self._chunk_size = chunk_size
        self._max_concurrency = max(1, max_concurrency)
        self._name_fields = tuple(name_fields)

    async def synthesize(self, question: str, result: ResultSet) -> SynthesisResult:
        if not result.rows:
            return SynthesisResult(answer=NO_DATA_ANSWER)
        rows = visible_rows(result)
        chunks = chunk_rows(rows, self._chunk_size)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _render(index: int, chunk: list[dict[str, Any]]) -> str:
            async with semaphore:
                messages = build_synthesis_messages(question, chunk, chunk_index=index, chunk_count=len(chunks))
                return await self._gateway.complete(messages, purpose="synthesis")

        # gather preserves argument order, so parts come back in row order.
        parts = await asyncio.gather(*(_render(index, chunk) for index, chunk in enumerate(chunks)))
        answer = "\n\n".join(part.strip() for part in parts if part and part.strip())
        missing = self._missing_names(rows, answer)
        if missing:
            logger.warning("answer_completeness_warning missing=%d rows=%d", len(missing), len(rows))
        return SynthesisResult(answer=answer, missing=missing)

    def _missing_names(self, rows: list[dict[str, Any]], answer: str) -> list[str]:
        haystack = answer.casefold()
        missing = []
        for row in rows:
            name = row_name(row, self._name_fields)
            if name is not None and name.casefold() not in haystack:
                missing.append(name)
        return missing

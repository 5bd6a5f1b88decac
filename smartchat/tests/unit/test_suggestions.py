from __future__ import annotations

import pytest

from smartchat.core.errors import ProviderUnavailableError
from smartchat.providers.llm.fake import FakeChatProvider
from smartchat.services.suggestions import FALLBACK_SUGGESTIONS, SuggestionGenerator, parse_suggestions
from smartchat.tests.utils.fakes import make_gateway


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1. Which tasks are due?\n2. Who owns Website?", ["Which tasks are due?", "Who owns Website?"]),
        ("Sure!\n1.  First one \n2. Second one\n3. Third one", ["First one", "Second one"]),
        ("1. only one suggestion", None),
        ("no numbering here", None),
        ("", None),
    ],
)
def test_parse_suggestions(raw: str, expected) -> None:
    assert parse_suggestions(raw) == expected


@pytest.mark.asyncio
async def test_suggest_returns_two_questions() -> None:
    provider = FakeChatProvider(["1. What is late?\n2. Who is busiest?"])
    suggestions = await SuggestionGenerator(make_gateway(provider)).suggest("overdue tasks", "Two tasks.")
    assert suggestions == ["What is late?", "Who is busiest?"]
    assert provider.calls[0]["temperature"] == 0.7
    assert provider.calls[0]["max_tokens"] == 200


@pytest.mark.asyncio
async def test_suggest_falls_back_on_unparseable_output() -> None:
    provider = FakeChatProvider(["I have no idea"])
    suggestions = await SuggestionGenerator(make_gateway(provider)).suggest("q", "a")
    assert suggestions == list(FALLBACK_SUGGESTIONS)


@pytest.mark.asyncio
async def test_suggest_falls_back_on_provider_error() -> None:
    provider = FakeChatProvider([ProviderUnavailableError("down")])
    suggestions = await SuggestionGenerator(make_gateway(provider)).suggest("q", "a")
    assert suggestions == list(FALLBACK_SUGGESTIONS)

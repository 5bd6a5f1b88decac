from __future__ import annotations

import logging

from smartchat.agent.prompts import build_classification_messages
from smartchat.core.errors import ClassificationFallback, ProviderError
from smartchat.services.model_gateway import ModelGateway


logger = logging.getLogger(__name__)

INTENT_LABELS = ("data_query", "chit_chat", "help", "other")

CANNED_REPLIES = {
    "chit_chat": (
        "Hi! I'm here to help with your projects, tasks and team. What would you like to know?",
        ["Show my overdue tasks", "Which projects are active?"],
    ),
    "help": (
        "You can ask me questions about your team's data, for example task deadlines, "
        "project status, assignees or logged time. I'll look it up and summarize the answer.",
        ["What tasks are due this week?", "Who is assigned to the most tasks?"],
    ),
}


def parse_label(raw: str) -> str:
    cleaned = (raw or "").strip().strip(".\"'`").lower().replace("-", "_").replace(" ", "_")
    return cleaned if cleaned in INTENT_LABELS else "other"


class IntentClassifier:
    """Advisory labelling of a message; never gates the query path."""

    def __init__(self, gateway: ModelGateway) -> None:
        self._gateway = gateway

    async def classify(self, user_message: str) -> str:
        try:
            raw = await self._gateway.complete(build_classification_messages(user_message), purpose="classify")
        except ProviderError as exc:
            logger.warning("classification_fallback error=%s", type(exc).__name__)
            return "other"
        label = parse_label(raw)
        logger.info("message_classified label=%s", label)
        return label

    async def require_data_query(self, user_message: str) -> str:
        label = await self.classify(user_message)
        if label in CANNED_REPLIES:
            raise ClassificationFallback(label)
        return label

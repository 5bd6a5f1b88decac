from __future__ import annotations

import logging
import re
import time
from typing import Callable

from langgraph.graph import END, StateGraph

from smartchat.agent.prompts import build_query_messages
from smartchat.core.errors import ClassificationFallback, ExecutionError, IntentError, ProviderError
from smartchat.domain.chat import Caller, ChatReply, ConversationTurn, TenantScope
from smartchat.domain.state import ChatState
from smartchat.persistence.repos.chat_logs import ChatLogSink
from smartchat.services.classification import CANNED_REPLIES, IntentClassifier
from smartchat.services.executor import QueryExecutor
from smartchat.services.intent import extract_intent
from smartchat.services.model_gateway import ModelGateway
from smartchat.services.relevance import RelevanceRanker
from smartchat.services.schema_catalog import SchemaCatalog
from smartchat.services.suggestions import SuggestionGenerator
from smartchat.services.synthesis import AnswerSynthesizer
from smartchat.services.telemetry import increment_counter
from smartchat.sql.validator import QueryValidator, Rejected


logger = logging.getLogger(__name__)

CLARIFY_ANSWER = "Sorry, I couldn't understand your request."
CLARIFY_SUGGESTIONS = ["Try asking about tasks, projects, or team members"]
APOLOGY_ANSWER = "Something went wrong while querying the data."
APOLOGY_SUGGESTIONS = ["Try asking again in a moment"]
CROSS_TEAM_REFUSAL = "Sorry, you do not have permission to access data across multiple teams."
CROSS_TEAM_SUGGESTIONS = ["Try asking about your own team's tasks or projects."]

_CROSS_TEAM_RE = re.compile(r"which teams|all teams|team leaderboard|team ranking", re.IGNORECASE)


def resolve_scope(caller: Caller, message: str) -> TenantScope | None:
    # Active team by default; cross-team wording widens to every authorized team.
    if _CROSS_TEAM_RE.search(message):
        if len(caller.team_ids) <= 1:
            return None
        return TenantScope.of(*caller.team_ids)
    return TenantScope.of(caller.team_id)


def last_user_message(turns: list[ConversationTurn]) -> str:
    for turn in reversed(turns):
        if turn.role == "user":
            return turn.content
    return ""


def _timed(state: ChatState, key: str, started: float) -> dict[str, float]:
    timings = dict(state.get("timings_ms") or {})
    timings[key] = (time.monotonic() - started) * 1000.0
    return timings


def build_chat_graph(
    *,
    catalog: SchemaCatalog,
    ranker: RelevanceRanker,
    gateway: ModelGateway,
    validator: QueryValidator,
    executor: QueryExecutor,
    synthesizer: AnswerSynthesizer,
    suggester: SuggestionGenerator,
    classifier: IntentClassifier,
    sink: ChatLogSink | None = None,
    row_cap: int = 100,
):
    graph = StateGraph(ChatState)
    tenant_column = validator.policy.tenant_column

    async def _log_turn(state: ChatState, answer: str) -> None:
        if sink is None:
            return
        caller = state["caller"]
        transcript = list(state["turns"]) + [ConversationTurn(role="assistant", content=answer)]
        await sink.append(team_id=caller.team_id, user_id=caller.user_id, turns=transcript)

    async def classify(state: ChatState) -> dict:
        try:
            label = await classifier.require_data_query(state["user_message"])
        except ClassificationFallback as exc:
            return {"intent_label": exc.intent}
        return {"intent_label": label}

    async def canned(state: ChatState) -> dict:
        answer, suggestions = CANNED_REPLIES[state["intent_label"]]
        await _log_turn(state, answer)
        return {"reply": ChatReply(answer=answer, suggestions=list(suggestions), outcome=state["intent_label"])}

    async def scope_turn(state: ChatState) -> dict:
        scope = resolve_scope(state["caller"], state["user_message"])
        if scope is None:
            increment_counter("chat_cross_team_refused_total")
            reply = ChatReply(answer=CROSS_TEAM_REFUSAL, suggestions=list(CROSS_TEAM_SUGGESTIONS), outcome="refused")
            return {"reply": reply}
        return {"scope": scope}

    async def fetch_schema(state: ChatState) -> dict:
        started = time.monotonic()
        schema = await catalog.get_schema()
        ranked = await ranker.rank(state["user_message"], schema)
        return {"schema": schema, "ranked": ranked, "timings_ms": _timed(state, "schema", started)}

    async def build_prompt(state: ChatState) -> dict:
        messages = build_query_messages(
            state["turns"],
            scope=state["scope"],
            ranked=state["ranked"],
            full_schema=state["schema"],
            tenant_column=tenant_column,
            row_cap=row_cap,
        )
        return {"messages": messages}

    async def call_model(state: ChatState) -> dict:
        started = time.monotonic()
        try:
            raw = await gateway.complete(state["messages"], purpose="query")
        except ProviderError as exc:
            logger.warning("query_generation_failed error=%s", type(exc).__name__)
            return {"error": exc}
        return {"raw_completion": raw, "timings_ms": _timed(state, "generation", started)}

    async def extract(state: ChatState) -> dict:
        try:
            intent = extract_intent(state["raw_completion"])
        except IntentError as exc:
            logger.info("intent_extraction_failed error=%s", exc)
            return {"error": exc}
        if not intent.is_query:
            # The model declined to query; its summary is the reply.
            return {"intent": intent, "answer": intent.summary.strip() or CLARIFY_ANSWER, "outcome": "no_query"}
        return {"intent": intent}

    async def validate(state: ChatState) -> dict:
        verdict = validator.validate(state["intent"].query, state["scope"])
        if isinstance(verdict, Rejected):
            return {"error": verdict.reason}
        return {"verdict": verdict}

    async def execute(state: ChatState) -> dict:
        started = time.monotonic()
        try:
            result = await executor.execute(state["verdict"])
        except ExecutionError as exc:
            return {"error": exc}
        return {"result": result, "timings_ms": _timed(state, "execution", started)}

    async def synthesize(state: ChatState) -> dict:
        started = time.monotonic()
        try:
            synthesis = await synthesizer.synthesize(state["user_message"], state["result"])
        except ProviderError as exc:
            logger.warning("answer_synthesis_failed error=%s", type(exc).__name__)
            return {"error": exc}
        return {"answer": synthesis.answer, "timings_ms": _timed(state, "synthesis", started)}

    async def suggest(state: ChatState) -> dict:
        suggestions = await suggester.suggest(state["user_message"], state["answer"])
        return {"suggestions": suggestions}

    async def respond(state: ChatState) -> dict:
        await _log_turn(state, state["answer"])
        increment_counter("chat_answered_total")
        return {"reply": ChatReply(answer=state["answer"], suggestions=state["suggestions"], outcome="answered")}

    async def clarify(state: ChatState) -> dict:
        increment_counter("chat_clarified_total")
        answer = state.get("answer") or CLARIFY_ANSWER
        outcome = state.get("outcome") or "clarify"
        return {"reply": ChatReply(answer=answer, suggestions=list(CLARIFY_SUGGESTIONS), outcome=outcome)}

    async def apologize(state: ChatState) -> dict:
        increment_counter("chat_failed_total")
        return {"reply": ChatReply(answer=APOLOGY_ANSWER, suggestions=list(APOLOGY_SUGGESTIONS), outcome="error")}

    def _on_error(next_node: str, error_node: str) -> Callable[[ChatState], str]:
        def route(state: ChatState) -> str:
            return error_node if state.get("error") is not None else next_node

        return route

    def _after_classify(state: ChatState) -> str:
        # Only recognized small talk short-circuits; everything else takes the data path.
        return "canned" if state["intent_label"] in CANNED_REPLIES else "scope_turn"

    def _after_scope(state: ChatState) -> str:
        return END if state.get("reply") is not None else "fetch_schema"

    def _after_extract(state: ChatState) -> str:
        if state.get("error") is not None or state.get("outcome") == "no_query":
            return "clarify"
        return "validate"

    graph.add_node("classify", classify)
    graph.add_node("canned", canned)
    graph.add_node("scope_turn", scope_turn)
    graph.add_node("fetch_schema", fetch_schema)
    graph.add_node("build_prompt", build_prompt)
    graph.add_node("call_model", call_model)
    graph.add_node("extract", extract)
    graph.add_node("validate", validate)
    graph.add_node("execute", execute)
    graph.add_node("synthesize", synthesize)
    graph.add_node("suggest", suggest)
    graph.add_node("respond", respond)
    graph.add_node("clarify", clarify)
    graph.add_node("apologize", apologize)

    graph.set_entry_point("classify")
    graph.add_conditional_edges("classify", _after_classify, {"canned": "canned", "scope_turn": "scope_turn"})
    graph.add_conditional_edges("scope_turn", _after_scope, {END: END, "fetch_schema": "fetch_schema"})
    graph.add_edge("fetch_schema", "build_prompt")
    graph.add_edge("build_prompt", "call_model")
    graph.add_conditional_edges(
        "call_model", _on_error("extract", "apologize"), {"extract": "extract", "apologize": "apologize"}
    )
    graph.add_conditional_edges("extract", _after_extract, {"validate": "validate", "clarify": "clarify"})
    graph.add_conditional_edges(
        "validate", _on_error("execute", "clarify"), {"execute": "execute", "clarify": "clarify"}
    )
    graph.add_conditional_edges(
        "execute", _on_error("synthesize", "apologize"), {"synthesize": "synthesize", "apologize": "apologize"}
    )
    graph.add_conditional_edges(
        "synthesize", _on_error("suggest", "apologize"), {"suggest": "suggest", "apologize": "apologize"}
    )
    graph.add_edge("suggest", "respond")
    graph.add_edge("respond", END)
    graph.add_edge("canned", END)
    graph.add_edge("clarify", END)
    graph.add_edge("apologize", END)

    return graph.compile()


class ChatPipeline:
    """One chat turn: classify, query under the caller's tenant scope, answer."""

    def __init__(self, **components) -> None:
        self._graph = build_chat_graph(**components)

    async def run_turn(self, turns: list[ConversationTurn], caller: Caller) -> ChatReply:
        state: ChatState = {
            "caller": caller,
            "turns": list(turns),
            "user_message": last_user_message(turns),
            "timings_ms": {},
        }
        final = await self._graph.ainvoke(state)
        reply = final["reply"]
        logger.info(
            "chat_turn_complete outcome=%s timings_ms=%s",
            reply.outcome,
            {key: round(value, 1) for key, value in (final.get("timings_ms") or {}).items()},
        )
        return reply

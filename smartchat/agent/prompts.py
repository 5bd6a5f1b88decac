from __future__ import annotations

import json
from typing import Any

from smartchat.domain.chat import ConversationTurn, SchemaDescriptor, TenantScope


NO_DATA_ANSWER = "No data found."

_FEW_SHOT = """Examples (team ids shown as <TEAM_ID>):
Question: show my overdue tasks
{"summary": "Overdue tasks", "is_query": true, "query": "SELECT t.name, t.end_date FROM tasks t JOIN projects p ON t.project_id = p.id WHERE t.end_date < CURRENT_DATE AND p.team_id = '<TEAM_ID>' LIMIT 100"}
Question: how many projects do we have?
{"summary": "Project count", "is_query": true, "query": "SELECT COUNT(*) AS project_count FROM projects p WHERE p.team_id = '<TEAM_ID>'"}
Question: thanks!
{"summary": "You're welcome! Ask me anything about your projects or tasks.", "is_query": false, "query": ""}"""


def _scope_clause(scope: TenantScope, tenant_column: str) -> str:
    ids = ", ".join(f"'{tenant_id}'" for tenant_id in scope.ids)
    if len(scope.ids) == 1:
        return f"{tenant_column} = {ids}"
    return f"{tenant_column} IN ({ids})"


def build_query_messages(
    turns: list[ConversationTurn],
    *,
    scope: TenantScope,
    ranked: list[SchemaDescriptor],
    full_schema: list[SchemaDescriptor],
    tenant_column: str,
    row_cap: int,
) -> list[dict[str, str]]:
    ranked_text = "\n".join(f"- {d.render()} alias {d.alias}" for d in ranked)
    schema_text = "\n".join(f"- {d.render()}" for d in full_schema)
    system_prompt = (
        "You are a data assistant for a project management application. "
        "Translate the user's latest question into one PostgreSQL query.\n\n"
        "Rules:\n"
        "1. Write a single SELECT statement. Never modify data and never use CTEs, "
        "subqueries or UNION.\n"
        "2. Use only the tables and columns listed below, with explicit JOIN ... ON.\n"
        f"3. Restrict every query to the user's teams with {_scope_clause(scope, tenant_column)} "
        "on a table that has that column (join through projects when needed).\n"
        f"4. Add LIMIT {row_cap} unless the query aggregates.\n"
        "5. Select human-readable columns (names, titles, dates, statuses); skip ids and color fields.\n"
        "6. If the question is not about the data, set is_query to false and answer briefly in summary.\n\n"
        f"Most relevant tables:\n{ranked_text}\n\n"
        f"All available tables:\n{schema_text}\n\n"
        f"{_FEW_SHOT}\n\n"
        'Respond with JSON only: {"summary": string, "query": string, "is_query": boolean}'
    )
    messages = [{"role": "system", "content": system_prompt}]
    # Client-supplied system turns are never forwarded.
    messages.extend(turn.as_message() for turn in turns if turn.role in ("user", "assistant"))
    return messages


def build_classification_messages(user_message: str) -> list[dict[str, str]]:
    return [
        {
            "role": "system",
            "content": (
                "Classify the user's message into exactly one label: data_query, chit_chat, help, other. "
                "data_query: asks about tasks, projects, members, time logs or other workspace data. "
                "chit_chat: greetings, thanks, small talk. "
                "help: asks how to use this assistant. "
                "Reply with the label only."
            ),
        },
        {"role": "user", "content": user_message},
    ]


def build_synthesis_messages(
    question: str,
    rows: list[dict[str, Any]],
    *,
    chunk_index: int,
    chunk_count: int,
) -> list[dict[str, str]]:
    payload = json.dumps(rows, default=str, ensure_ascii=False)
    return [
        {
            "role": "system",
            "content": (
                "You turn database rows into a clear answer for the user's question. "
                "Mention every row, keep every value exactly as given (null stays null), "
                "and do not invent or omit data. Format with markdown bullets or a table. "
                "Never show internal identifiers."
            ),
        },
        {
            "role": "user",
            "content": (
                f"Question: {question}\n"
                f"Rows (part {chunk_index + 1} of {chunk_count}):\n{payload}"
            ),
        },
    ]


def build_suggestion_messages(user_message: str, answer: str) -> list[dict[str, str]]:
    return [
        {
            "role": "system",
            "content": (
                "Suggest two short follow-up questions the user could ask next about their "
                "projects and tasks. Reply exactly as:\n1. <question>\n2. <question>"
            ),
        },
        {"role": "user", "content": f"Question: {user_message}\nAnswer: {answer}"},
    ]

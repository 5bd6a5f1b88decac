from __future__ import annotations

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from smartchat.providers.llm.base import ChatProvider
from smartchat.providers.llm.tokenizer import RatioTokenizer
from smartchat.services.model_gateway import CallParams, GatewayConfig, ModelGateway
from smartchat.services.resilience import CircuitBreaker, RetryPolicy
from smartchat.sql.validator import TenantHop, TenantPolicy


WORKSPACE_DDL = (
    "CREATE TABLE projects (id TEXT PRIMARY KEY, name TEXT NOT NULL, team_id TEXT NOT NULL, status TEXT)",
    "CREATE TABLE users (id TEXT PRIMARY KEY, name TEXT NOT NULL, email TEXT)",
    "CREATE TABLE team_members (id TEXT PRIMARY KEY, user_id TEXT REFERENCES users(id), team_id TEXT NOT NULL)",
    (
        "CREATE TABLE tasks (id TEXT PRIMARY KEY, name TEXT NOT NULL, "
        "project_id TEXT REFERENCES projects(id), end_date DATE, done BOOLEAN DEFAULT 0)"
    ),
)

WORKSPACE_ROWS = (
    "INSERT INTO projects VALUES ('p1', 'Website', 'T1', 'active')",
    "INSERT INTO projects VALUES ('p2', 'Mobile', 'T1', 'active')",
    "INSERT INTO projects VALUES ('p3', 'Secret', 'T2', 'active')",
    "INSERT INTO users VALUES ('u1', 'Ada', 'ada@example.com')",
    "INSERT INTO team_members VALUES ('m1', 'u1', 'T1')",
    "INSERT INTO team_members VALUES ('m2', 'u1', 'T2')",
    "INSERT INTO tasks VALUES ('k1', 'Write copy', 'p1', '2020-01-05', 0)",
    "INSERT INTO tasks VALUES ('k2', 'Fix login', 'p2', '2020-02-01', 0)",
    "INSERT INTO tasks VALUES ('k3', 'Launch', 'p1', '2999-01-01', 0)",
    "INSERT INTO tasks VALUES ('k4', 'Other team task', 'p3', '2020-01-01', 0)",
)


def make_policy() -> TenantPolicy:
    return TenantPolicy(
        allowed_tables=frozenset({"projects", "tasks", "users", "team_members"}),
        tenant_column="team_id",
        tenant_tables=frozenset({"projects", "team_members"}),
        hops={"tasks": TenantHop(column="project_id", target_table="projects", target_column="id")},
        allowed_schemas=frozenset({"public"}),
    )


def make_gateway_config(
    *,
    max_context_tokens: int = 16385,
    reserved_response_tokens: int = 1000,
    max_attempts: int = 1,
    timeout_ms: int = 1000,
) -> GatewayConfig:
    return GatewayConfig(
        max_context_tokens=max_context_tokens,
        reserved_response_tokens=reserved_response_tokens,
        retry=RetryPolicy(timeout_ms=timeout_ms, max_attempts=max_attempts, backoff_ms=1),
        query=CallParams(0.7, 1000),
        classify=CallParams(0.0, 10),
        synthesis=CallParams(0.7, 1000),
        suggestions=CallParams(0.7, 200),
    )


async def _no_sleep(_seconds: float) -> None:
    return None


def make_gateway(
    provider: ChatProvider,
    *,
    breaker: CircuitBreaker | None = None,
    **config: Any,
) -> ModelGateway:
    return ModelGateway(
        provider,
        RatioTokenizer(4.0),
        make_gateway_config(**config),
        breaker=breaker,
        sleep=_no_sleep,
    )


async def create_workspace_engine(path: Any) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        for statement in WORKSPACE_DDL + WORKSPACE_ROWS:
            await conn.execute(text(statement))
    return engine

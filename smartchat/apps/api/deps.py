from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from smartchat.agent.graph import ChatPipeline
from smartchat.core.config import get_settings
from smartchat.domain.chat import Caller, is_valid_tenant_id
from smartchat.persistence.db import SessionLocal, get_session, query_engine
from smartchat.persistence.repos.chat_logs import SqlChatLogSink
from smartchat.persistence.repos.memberships import list_team_ids
from smartchat.providers.llm.factory import get_chat_provider, get_tokenizer
from smartchat.services.classification import IntentClassifier
from smartchat.services.executor import QueryExecutor
from smartchat.services.model_gateway import GatewayConfig, ModelGateway
from smartchat.services.relevance import RelevanceRanker
from smartchat.services.resilience import CircuitBreaker, get_resilience_redis
from smartchat.services.schema_catalog import SchemaCatalog
from smartchat.services.suggestions import SuggestionGenerator
from smartchat.services.synthesis import AnswerSynthesizer
from smartchat.sql.validator import QueryValidator, TenantPolicy


logger = logging.getLogger(__name__)

_pipeline: ChatPipeline | None = None
_pipeline_lock = asyncio.Lock()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_caller(request: Request, db: AsyncSession = Depends(get_db)) -> Caller:
    # Identity is established upstream; deployments without a trusted gateway override this dependency.
    settings = get_settings()
    if not settings.auth_trusted_headers:
        raise _auth_error("Caller identity is not available")
    user_id = (request.headers.get("X-User-Id") or "").strip()
    team_id = (request.headers.get("X-Team-Id") or "").strip()
    if not user_id or not team_id:
        raise _auth_error("X-User-Id and X-Team-Id headers are required")
    if not is_valid_tenant_id(team_id):
        raise _auth_error("X-Team-Id is not a valid team identifier")
    try:
        team_ids = await list_team_ids(db, user_id)
    except SQLAlchemyError as exc:
        logger.exception("membership_lookup_failed user_id=%s", user_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Membership lookup failed"},
        ) from exc
    if team_id not in team_ids:
        raise _forbidden_error("Caller is not a member of the requested team")
    # Active team first so single-team scopes always resolve to it.
    ordered = (team_id,) + tuple(value for value in team_ids if value != team_id)
    return Caller(user_id=user_id, team_id=team_id, team_ids=ordered)


async def build_chat_pipeline() -> ChatPipeline:
    settings = get_settings()
    breaker = CircuitBreaker("llm", redis=await get_resilience_redis())
    gateway = ModelGateway(
        get_chat_provider(),
        get_tokenizer(),
        GatewayConfig.from_settings(settings),
        breaker=breaker,
    )
    return ChatPipeline(
        catalog=SchemaCatalog(query_engine, settings.allowed_table_list(), ttl_s=settings.schema_cache_ttl_s),
        ranker=RelevanceRanker(gateway, top_k=settings.relevance_top_k),
        gateway=gateway,
        validator=QueryValidator(TenantPolicy.from_settings(settings)),
        executor=QueryExecutor(
            query_engine,
            row_cap=settings.query_row_cap,
            statement_timeout_ms=settings.query_statement_timeout_ms,
        ),
        synthesizer=AnswerSynthesizer(
            gateway,
            chunk_size=settings.synthesis_chunk_size,
            max_concurrency=settings.synthesis_max_concurrency,
            name_fields=settings.answer_name_field_list(),
        ),
        suggester=SuggestionGenerator(gateway),
        classifier=IntentClassifier(gateway),
        sink=SqlChatLogSink(SessionLocal),
        row_cap=settings.query_row_cap,
    )


async def get_chat_pipeline() -> ChatPipeline:
    # The schema cache and embedding cache live on the pipeline, so it is built once per process.
    global _pipeline
    if _pipeline is not None:
        return _pipeline
    async with _pipeline_lock:
        if _pipeline is None:
            _pipeline = await build_chat_pipeline()
    return _pipeline

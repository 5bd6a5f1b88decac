from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from smartchat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from smartchat.apps.api.response import SuccessEnvelope, success_response
from smartchat.core.config import get_settings
from smartchat.services.telemetry import external_call_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

_MODEL_WINDOW_S = 300


class ModelCallStats(BaseModel):
    calls: int
    error_rate: float | None = None
    p95_ms: float | None = None


class HealthResponse(BaseModel):
    status: str
    model: ModelCallStats


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; recent model-call stats are informational.
    stats = external_call_stats(f"llm.{get_settings().llm_provider}.chat", _MODEL_WINDOW_S)
    payload = HealthResponse(status="ok", model=ModelCallStats(**stats))
    return success_response(request=request, data=payload)

"""
gateway.py — Key-gated service routes.

Routes:
  POST /api/v1/research  — repository analysis (ANALYSIS keys)
  POST /api/v1/chatbot   — repository chat     (CHAT keys)

Every route authorizes through authorize(), which calls the quota
engine's check_and_record() under a short timeout. Authorization runs
inside the handler, after FastAPI has validated the body, so a
malformed request never consumes quota.

Status mapping (see keygate.core.errors):
  401 malformed / unknown key, 403 wrong key type, 402 free tier used up,
  429 rate limited, 503 usage store unavailable (retryable).

The AI providers that actually answer the request sit behind this
service; these handlers return the accepted request with its usage info.
"""

import asyncio
import logging
import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status

from keygate.core.config import settings
from keygate.core.database import get_db
from keygate.core.errors import (
    QuotaSystemError,
    denial_to_http,
    rate_limit_headers,
    system_error_to_http,
)
from keygate.models.credential import QuotaVerdict, ServiceClass
from keygate.models.gateway import ChatbotRequest, GatewayResponse, ResearchRequest, UsageInfo
from keygate.services.credentials import CredentialStore
from keygate.services.ledger import UsageLedger
from keygate.services.quota import QuotaEngine, QuotaPolicy
from keygate.services.tiers import AccountStore
from keygate.services.window_limiter import WindowedRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["gateway"])


# ── Engine wiring ─────────────────────────────────────────────────────────────

def build_quota_engine(db) -> QuotaEngine:
    """Assemble the engine and its stores on top of *db*."""
    ledger = UsageLedger(db)
    return QuotaEngine(
        credentials=CredentialStore(db, prefix=settings.key_prefix),
        accounts=AccountStore(db),
        ledger=ledger,
        limiter=WindowedRateLimiter(ledger),
        policy=QuotaPolicy.from_settings(settings),
    )


def get_quota_engine(db=Depends(get_db)) -> QuotaEngine:
    """FastAPI dependency. No database means no metering, so no service either."""
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return build_quota_engine(db)


EngineDep = Annotated[QuotaEngine, Depends(get_quota_engine)]
ApiKeyHeader = Annotated[Optional[str], Header(alias="X-API-Key")]


async def authorize(
    engine: QuotaEngine,
    api_key: Optional[str],
    service_class: ServiceClass,
    route: str,
    request: Request,
    response: Response,
) -> QuotaVerdict:
    """
    Run check_and_record for one request and translate the outcome.

    Returns the allowed verdict (and sets X-RateLimit-* on *response*);
    raises HTTPException for denials, timeouts and store failures.
    """
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "missing_api_key", "message": "API key is required in the X-API-Key header."},
            headers={"WWW-Authenticate": "ApiKey"},
        )

    metadata = {
        "method": request.method,
        "path": request.url.path,
        "client": request.client.host if request.client else None,
    }
    try:
        verdict = await asyncio.wait_for(
            engine.check_and_record(api_key, service_class, route, metadata=metadata),
            timeout=settings.quota_timeout_ms / 1000,
        )
    except asyncio.TimeoutError:
        logger.warning("Quota check timed out after %d ms on %s", settings.quota_timeout_ms, route)
        raise system_error_to_http()
    except QuotaSystemError:
        raise system_error_to_http()

    if not verdict.allowed:
        raise denial_to_http(verdict)

    response.headers.update(rate_limit_headers(verdict))
    return verdict


def _usage(verdict: QuotaVerdict) -> UsageInfo:
    return UsageInfo(
        tier=verdict.tier.value,
        limit=verdict.limit,
        remaining=verdict.remaining,
        reset_at=verdict.reset_at,
    )


# ── Routes ────────────────────────────────────────────────────────────────────

@router.post("/research", response_model=GatewayResponse)
async def research(
    payload: ResearchRequest,
    request: Request,
    response: Response,
    engine: EngineDep,
    x_api_key: ApiKeyHeader = None,
):
    """Submit a repository for analysis. Requires an ANALYSIS key."""
    verdict = await authorize(engine, x_api_key, ServiceClass.ANALYSIS, "research", request, response)
    return GatewayResponse(
        request_id=uuid.uuid4().hex[:8],
        data={"service": "research", "status": "accepted", "repo_url": payload.repo_url, "options": payload.options},
        usage=_usage(verdict),
    )


@router.post("/chatbot", response_model=GatewayResponse)
async def chatbot(
    payload: ChatbotRequest,
    request: Request,
    response: Response,
    engine: EngineDep,
    x_api_key: ApiKeyHeader = None,
):
    """Send a chat message about a repository. Requires a CHAT key."""
    verdict = await authorize(engine, x_api_key, ServiceClass.CHAT, "chatbot", request, response)
    return GatewayResponse(
        request_id=uuid.uuid4().hex[:8],
        data={
            "service": "chatbot",
            "status": "accepted",
            "repo_url": payload.repo_url,
            "history_length": len(payload.conversation_history),
        },
        usage=_usage(verdict),
    )

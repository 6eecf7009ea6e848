"""FastAPI router for the leaderboard engine.

Endpoints:
- GET    /api/v1/leaderboard?force=all|strain|sleep|recovery
- POST   /api/v1/members                                  (enroll)
- POST   /api/v1/unlink                                   (Bearer access token)
- POST   /api/v1/admin/members/remove                     (X-Admin-Secret)
- POST   /api/v1/auth/refresh
- PUT    /api/v1/sessions/{session_id}/background-refresh
- DELETE /api/v1/sessions/{session_id}/background-refresh
- GET    /api/v1/sessions/{session_id}/background-refresh

Engine components are created in the application lifespan and read from
``app.state``; tests swap them through dependency overrides.
"""

import hmac
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from leaderboard.adapters.http_client import CredentialRejectedError, TransientProviderError
from leaderboard.adapters.protocol import ProviderClient
from leaderboard.aggregator import TieredAggregator
from leaderboard.domain.models import ForceScope
from leaderboard.enrollment import (
    ProfileIdentityError,
    enroll_member,
    remove_member,
    unlink_member,
)
from leaderboard.session_refresh import SessionRefreshRegistry
from leaderboard.vault import SecretVault
from shared.config import settings
from shared.database import get_session
from shared.exceptions import (
    InvalidForceScopeError,
    MemberIdentityError,
    MissingMemberSelectorError,
    NotFoundError,
    ProviderUnavailableError,
    UnauthorizedError,
)
from shared.metrics import api_requests_total, api_response_duration_seconds
from shared.middleware import request_id_var

router = APIRouter(prefix="/api/v1")


# --- Dependencies ---


def get_vault(request: Request) -> SecretVault:
    return request.app.state.vault


def get_provider(request: Request) -> ProviderClient:
    return request.app.state.provider


def get_aggregator(request: Request) -> TieredAggregator:
    return request.app.state.aggregator


def get_registry(request: Request) -> SessionRefreshRegistry:
    return request.app.state.session_registry


def bearer_token(authorization: str | None = Header(None)) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("A Bearer access token is required.")
    return token.strip()


def require_admin(x_admin_secret: str | None = Header(None, alias="X-Admin-Secret")) -> None:
    expected = settings.admin_secret
    if not expected or not x_admin_secret:
        raise UnauthorizedError("Admin secret is missing or not configured.")
    if not hmac.compare_digest(x_admin_secret.encode(), expected.encode()):
        raise UnauthorizedError("Admin secret does not match.")


# --- Request models ---


class EnrollRequest(BaseModel):
    whoop_user_id: str = Field(..., min_length=1)
    display_name: str = Field("Member", min_length=1)
    avatar_url: str | None = None
    refresh_token: str = Field(..., min_length=1)


class RemoveMemberRequest(BaseModel):
    member_id: int | None = None
    whoop_user_id: str | None = None


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class BackgroundRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)
    access_token: str | None = None
    expires_in: int | None = Field(None, ge=0)


# --- Response helpers ---


def _meta() -> dict[str, Any]:
    return {
        "request_id": request_id_var.get(""),
        "timestamp": datetime.now(UTC).isoformat(),
        "api_version": settings.api_version,
    }


def _observe(endpoint: str, method: str, status_code: int, start_time: float) -> None:
    api_requests_total.labels(endpoint=endpoint, method=method, status_code=str(status_code)).inc()
    api_response_duration_seconds.labels(endpoint=endpoint).observe(time.monotonic() - start_time)


def parse_force(force: str | None) -> ForceScope | None:
    if force is None or force.strip() == "":
        return None
    try:
        return ForceScope(force.strip().lower())
    except ValueError:
        raise InvalidForceScopeError(force, {scope.value for scope in ForceScope}) from None


# --- Endpoints ---


@router.get("/leaderboard")
async def get_leaderboard(
    aggregator: TieredAggregator = Depends(get_aggregator),
    force: str | None = Query(None),
):
    """Run an aggregation pass and return today's sleep, recovery and strain rankings.

    Members without a value for a metric are omitted from that list; per-member
    provider failures never fail the request.
    """
    start_time = time.monotonic()
    scope = parse_force(force)
    leaderboard = await aggregator.run(force=scope)
    _observe("leaderboard", "GET", 200, start_time)
    return {"data": leaderboard.model_dump(mode="json"), "meta": _meta()}


@router.post("/members", status_code=201)
async def enroll(
    body: EnrollRequest,
    session: AsyncSession = Depends(get_session),
    vault: SecretVault = Depends(get_vault),
):
    """Enroll (or re-enroll) a member with a freshly obtained refresh token."""
    start_time = time.monotonic()
    member_id = await enroll_member(
        session,
        vault,
        whoop_user_id=body.whoop_user_id,
        display_name=body.display_name,
        avatar_url=body.avatar_url,
        refresh_token=body.refresh_token,
    )
    _observe("enroll", "POST", 201, start_time)
    return {
        "data": {"member_id": member_id, "whoop_user_id": body.whoop_user_id},
        "meta": _meta(),
    }


@router.post("/unlink")
async def unlink(
    access_token: str = Depends(bearer_token),
    session: AsyncSession = Depends(get_session),
    provider: ProviderClient = Depends(get_provider),
):
    """Remove the caller's own membership, identified through their provider profile."""
    start_time = time.monotonic()
    try:
        unlinked = await unlink_member(session, provider, access_token)
    except ProfileIdentityError:
        raise MemberIdentityError() from None
    except CredentialRejectedError:
        raise UnauthorizedError("The access token was rejected by the provider.") from None
    except TransientProviderError:
        raise ProviderUnavailableError() from None
    _observe("unlink", "POST", 200, start_time)
    return {"data": {"unlinked": unlinked}, "meta": _meta()}


@router.post("/admin/members/remove", dependencies=[Depends(require_admin)])
async def admin_remove_member(
    body: RemoveMemberRequest,
    session: AsyncSession = Depends(get_session),
):
    start_time = time.monotonic()
    if body.member_id is None and not body.whoop_user_id:
        raise MissingMemberSelectorError()
    removed = await remove_member(
        session, member_id=body.member_id, whoop_user_id=body.whoop_user_id or None
    )
    if not removed:
        selector = body.member_id if body.member_id is not None else body.whoop_user_id
        raise NotFoundError(f"Member '{selector}' not found.")
    _observe("admin_remove", "POST", 200, start_time)
    return {"data": {"removed": True}, "meta": _meta()}


@router.post("/auth/refresh")
async def refresh_token(
    body: TokenRefreshRequest,
    provider: ProviderClient = Depends(get_provider),
):
    """Exchange a client-held refresh token. The supplied token is echoed back if not rotated."""
    start_time = time.monotonic()
    try:
        grant = await provider.refresh_access_token(body.refresh_token)
    except CredentialRejectedError:
        raise UnauthorizedError("The refresh token was rejected by the provider.") from None
    except TransientProviderError:
        raise ProviderUnavailableError() from None

    expires_at = datetime.now(UTC) + timedelta(seconds=grant.expires_in)
    _observe("auth_refresh", "POST", 200, start_time)
    return {
        "data": {
            "access_token": grant.access_token,
            "refresh_token": grant.next_refresh_token(body.refresh_token),
            "expires_in": grant.expires_in,
            "expires_at": expires_at.isoformat(),
        },
        "meta": _meta(),
    }


@router.put("/sessions/{session_id}/background-refresh")
async def start_background_refresh(
    session_id: str,
    body: BackgroundRefreshRequest,
    registry: SessionRefreshRegistry = Depends(get_registry),
):
    start_time = time.monotonic()
    expires_at = None
    if body.expires_in is not None:
        expires_at = datetime.now(UTC) + timedelta(seconds=body.expires_in)
    registry.start(
        session_id,
        refresh_token=body.refresh_token,
        access_token=body.access_token,
        expires_at=expires_at,
    )
    _observe("background_refresh", "PUT", 200, start_time)
    return {"data": registry.status(session_id).model_dump(mode="json"), "meta": _meta()}


@router.delete("/sessions/{session_id}/background-refresh")
async def stop_background_refresh(
    session_id: str,
    registry: SessionRefreshRegistry = Depends(get_registry),
):
    """Idempotent: stopping an unknown session reports ``stopped: false``."""
    start_time = time.monotonic()
    stopped = await registry.stop(session_id)
    _observe("background_refresh", "DELETE", 200, start_time)
    return {"data": {"session_id": session_id, "stopped": stopped}, "meta": _meta()}


@router.get("/sessions/{session_id}/background-refresh")
async def background_refresh_status(
    session_id: str,
    registry: SessionRefreshRegistry = Depends(get_registry),
):
    start_time = time.monotonic()
    status = registry.status(session_id)
    _observe("background_refresh", "GET", 200, start_time)
    return {"data": status.model_dump(mode="json"), "meta": _meta()}

"""
api/routes/v1/api_keys.py -- API key issuance and lifecycle REST endpoints.

Routes:
  POST   /api/v1/api-keys/generate  -- mint a key; plaintext returned ONCE (201)
  GET    /api/v1/api-keys           -- list own keys (lastSix only)
  DELETE /api/v1/api-keys/{key_id}  -- revoke (flag flip, row kept for audit)

Security:
  All three need Action.api_key_manage (school_admin or higher) on top of the
  full gateway pipeline, so a key can only be minted from an authenticated,
  CSRF-checked session of an admin-role user.
  At most MAX_ACTIVE_KEYS active keys per user.
  IDOR guard: DELETE passes the owner id to the store; the store's WHERE clause
  requires both id and owner to match.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.models import ApiKeyGenerateRequest, ApiKeyGenerateResponse, ApiKeyResponse
from gateway.api_keys import ApiKeyGate
from gateway.authorization import Action
from gateway.dependencies import reject, require
from gateway.errors import bad_request, not_found, unauthorized
from gateway.models import Principal, User

MAX_ACTIVE_KEYS = 10

router = APIRouter()


def _owner(request: Request, principal: Principal) -> User:
    user = request.app.state.credential_store.find_user_by_id(principal.user_id)
    if user is None or not user.is_active:
        raise reject(request, unauthorized("session_user_inactive"), principal.user_id)
    return user


@router.post("/api-keys/generate", response_model=ApiKeyGenerateResponse, status_code=201)
def generate_api_key(
    request: Request,
    body: ApiKeyGenerateRequest,
    principal: Principal = Depends(require(Action.api_key_manage)),
) -> JSONResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored.

    durationValue and durationType go together; omit both for a key that
    never expires.
    """
    gate: ApiKeyGate = request.app.state.api_key_gate
    owner = _owner(request, principal)

    if (body.duration_value is None) != (body.duration_type is None):
        raise reject(
            request,
            bad_request("duration_incomplete", "durationValue and durationType must be given together"),
            principal.user_id,
        )

    active = [k for k in gate.list_api_keys(owner) if k.is_active]
    if len(active) >= MAX_ACTIVE_KEYS:
        raise reject(
            request,
            bad_request("key_limit_reached", f"Maximum of {MAX_ACTIVE_KEYS} active API keys. Revoke one first."),
            principal.user_id,
        )

    raw_key, record = gate.create_api_key(owner, body.label, body.duration_value, body.duration_type)
    return JSONResponse(
        status_code=201,
        content=ApiKeyGenerateResponse(
            api_key=raw_key,
            id=record.id,
            last_six=record.last_six,
            expires_at=record.expires_at,
        ).model_dump(by_alias=True, mode="json"),
        headers={"Cache-Control": "no-store"},
    )


@router.get("/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(
    request: Request,
    principal: Principal = Depends(require(Action.api_key_manage)),
) -> list[ApiKeyResponse]:
    """Return the caller's keys, newest first. Revoked keys are included."""
    gate: ApiKeyGate = request.app.state.api_key_gate
    return [
        ApiKeyResponse(
            id=k.id,
            label=k.label,
            last_six=k.last_six,
            is_active=k.is_active,
            created_at=k.created_at,
            expires_at=k.expires_at,
            last_used_at=k.last_used_at,
        )
        for k in gate.list_api_keys(_owner(request, principal))
    ]


@router.delete("/api-keys/{key_id}", status_code=204)
def revoke_api_key(
    request: Request,
    key_id: int,
    principal: Principal = Depends(require(Action.api_key_manage)),
) -> Response:
    """Revoke an API key owned by the caller. 404 for unknown or foreign keys."""
    gate: ApiKeyGate = request.app.state.api_key_gate
    if not gate.revoke_api_key(_owner(request, principal), key_id):
        raise reject(request, not_found("api_key_not_owned"), principal.user_id)
    return Response(status_code=204)

"""
gateway/dependencies.py -- FastAPI Depends() helpers wiring the gateway pipeline.

Every protected route runs the layers in a fixed order. Each stage calls the
one before it, so a route declares only its outermost stage and the request
stops at the first failure:

  admit_api_key -> authenticate_session -> guard_csrf -> require(action, ...)

Routes reached before a session exists (login, verify-login) use
admit_pre_session instead: API key, then the CSRF policy without a session.

The collaborators (gate, authenticator, guard, resolver, store) are read from
request.app.state, where the lifespan placed them. Nothing here reads settings.

This module is the single place where a gateway Rejection becomes an
HTTPException. The response detail is the generic {"code", "message"} pair for
the rejection kind; the reason code goes to the "flightschool.audit" logger
together with the path, method and principal id when known.

Layer rule: no imports from api/. May import fastapi (dependency injection).
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import BackgroundTasks, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from gateway.api_keys import AdmittedContext
from gateway.authorization import Action, ResourceRef
from gateway.errors import Rejection, not_found, unauthorized
from gateway.models import Principal, User
from gateway.store import CredentialStore

audit_logger = logging.getLogger("flightschool.audit")
logger = logging.getLogger("flightschool.gateway")

ResourceBuilder = Callable[[Request], ResourceRef]


def reject(
    request: Request,
    rejection: Rejection,
    principal_id: int | None = None,
    headers: dict[str, str] | None = None,
) -> HTTPException:
    """Audit a rejection and build the HTTPException that reports it generically."""
    audit_logger.warning(
        "rejected reason=%s status=%d method=%s path=%s principal=%s",
        rejection.reason,
        rejection.status_code,
        request.method,
        request.url.path,
        principal_id if principal_id is not None else "-",
    )
    return HTTPException(
        status_code=rejection.status_code,
        detail={"code": rejection.kind.value, "message": rejection.public_message},
        headers=headers,
    )


def _touch_usage(store: CredentialStore, key_id: int) -> None:
    try:
        store.touch_api_key_usage(key_id)
    except SQLAlchemyError:
        logger.warning("Could not record API key usage for key id=%s", key_id, exc_info=True)


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


def admit_api_key(request: Request, background_tasks: BackgroundTasks) -> AdmittedContext:
    """Require a valid API key. Raises HTTP 401 otherwise."""
    result = request.app.state.api_key_gate.admit(request.headers)
    if isinstance(result, Rejection):
        raise reject(request, result)
    request.state.api_key_context = result
    background_tasks.add_task(_touch_usage, request.app.state.credential_store, result.api_key.id)
    return result


def _check_csrf(request: Request, principal_id: int | None = None) -> None:
    rejection = request.app.state.csrf_guard.guard(
        request.method, request.url.path, request.headers, request.cookies
    )
    if rejection is not None:
        raise reject(request, rejection, principal_id)


def admit_pre_session(request: Request, background_tasks: BackgroundTasks) -> AdmittedContext:
    """Require an API key, then apply the CSRF policy. Exempt paths pass without a token."""
    context = admit_api_key(request, background_tasks)
    _check_csrf(request)
    return context


def authenticate_session(request: Request, background_tasks: BackgroundTasks) -> Principal:
    """Require an API key and a valid session token. Raises HTTP 401 otherwise."""
    admit_api_key(request, background_tasks)
    result = request.app.state.session_authenticator.authenticate(request.headers, request.cookies)
    if isinstance(result, Rejection):
        raise reject(request, result)
    request.state.principal = result
    return result


def guard_csrf(request: Request, background_tasks: BackgroundTasks) -> Principal:
    """Run the API key and session stages, then the CSRF check. Raises HTTP 403 on CSRF failure."""
    principal = authenticate_session(request, background_tasks)
    _check_csrf(request, principal.user_id)
    return principal


def current_user(request: Request, background_tasks: BackgroundTasks) -> User:
    """Full pipeline minus authorization, resolved to the stored User row."""
    principal = guard_csrf(request, background_tasks)
    user = request.app.state.credential_store.find_user_by_id(principal.user_id)
    if user is None or not user.is_active:
        raise reject(request, unauthorized("session_user_inactive"), principal.user_id)
    return user


def require(action: Action, resource_builder: ResourceBuilder | None = None):
    """Build a dependency running the whole pipeline plus authorization for action.

    resource_builder turns the request (usually its path params) into the
    ResourceRef to scope against. Without one only the rank check applies.

        @router.get("/schools/{school_id}")
        def read(principal: Principal = Depends(require(Action.school_read, school_from_path))): ...
    """

    def dependency(request: Request, background_tasks: BackgroundTasks) -> Principal:
        principal = guard_csrf(request, background_tasks)
        resource = None
        if resource_builder is not None:
            try:
                resource = resource_builder(request)
            except (KeyError, ValueError):
                raise reject(request, not_found("resource_ref_invalid"), principal.user_id) from None
        rejection = request.app.state.authorization_resolver.authorize(principal, action, resource)
        if rejection is not None:
            raise reject(request, rejection, principal.user_id)
        return principal

    return dependency


# ---------------------------------------------------------------------------
# Resource builders
# ---------------------------------------------------------------------------


def school_from_path(request: Request) -> ResourceRef:
    return ResourceRef.school(int(request.path_params["school_id"]))


def student_from_path(request: Request) -> ResourceRef:
    return ResourceRef.student(int(request.path_params["school_id"]), int(request.path_params["student_id"]))

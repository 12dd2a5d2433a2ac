from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from recipeshare.api.schemas import (
    ActivityResponse,
    AuthResponse,
    CsrfTokenResponse,
    Envelope,
    LoginRequest,
    MeResponse,
    PostListResponse,
    PostResponse,
    RegisterRequest,
    ResendOtpRequest,
    ResendOtpResponse,
    SecurityLogEntry,
    SecurityLogResponse,
    UserListResponse,
    UserResponse,
    VerifyOtpRequest,
)
from recipeshare.logging import (
    SECURITY_LOG_CAPACITY,
    get_correlation_id,
    get_logger,
    recent_security_events,
    security_event,
)
from recipeshare.service.access import ADMIN_ONLY, CONTENT_MANAGERS
from recipeshare.service.auth import AuthOutcome
from recipeshare.service.context import RequestContext
from recipeshare.service.csrf import CSRF_HEADER
from recipeshare.service.errors import RateLimited
from recipeshare.service.runtime import check_rate_limit, get_runtime
from recipeshare.service.sessions import AFK_TIMEOUT, SESSION_EXPIRED
from recipeshare.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    *,
    data: Optional[dict] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    if data is not None:
        payload["data"] = data
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    scope: str,
    response: Optional[Response] = None,
) -> None:
    """Consume one token from ``key`` or raise a 429 envelope.

    ``scope`` names the limit in logs; the key itself may contain an email
    and is never logged.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
    if not allowed:
        security_event("rate_limited", logger=logger, scope=scope, limit=limit)
        raise RateLimited("rate limit exceeded", retry_after=reset_seconds)


def _set_session_cookie(request: Request, response: Response, session: Session) -> None:
    runtime = get_runtime()
    settings = runtime.settings
    # Cookie lifetime tracks the absolute session lifetime, never beyond it
    max_age = max(0, int((session.expires_at - runtime.now()).total_seconds()))
    response.set_cookie(
        settings.session_cookie_name,
        session.id,
        max_age=max_age,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        path="/",
    )
    request.state.clear_session_cookie = False


def clear_session_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


async def get_context(request: Request) -> RequestContext:
    """Resolve the session cookie into this request's context.

    A cookie whose session just ended (idle, too old, or its account removed)
    is flagged so the app middleware clears it on the way out.
    """
    runtime = get_runtime()
    session_id = request.cookies.get(runtime.settings.session_cookie_name)
    ctx = runtime.auth.resolve_context(
        session_id,
        path=request.url.path,
        method=request.method,
        client_ip=_client_ip(request),
        request_id=get_correlation_id(),
    )
    if session_id and ctx.session is None:
        request.state.clear_session_cookie = True
    return ctx


async def get_user(ctx: RequestContext = Depends(get_context)) -> RequestContext:
    return get_runtime().auth.authenticate(ctx)


async def get_admin_user(ctx: RequestContext = Depends(get_context)) -> RequestContext:
    return get_runtime().auth.authenticate(ctx, ADMIN_ONLY)


async def get_content_manager(
    ctx: RequestContext = Depends(get_context),
) -> RequestContext:
    return get_runtime().auth.authenticate(ctx, CONTENT_MANAGERS)


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role.value,
        created_at=user.created_at,
    )


def _auth_response(outcome: AuthOutcome, *, message: Optional[str] = None) -> AuthResponse:
    if outcome.requires_otp:
        return AuthResponse(
            requires_otp=True,
            user_id=outcome.user.id,
            demo_otp=outcome.demo_otp,
            message=message,
        )
    return AuthResponse(
        requires_otp=False,
        user_id=outcome.user.id,
        user=_user_to_response(outcome.user),
        message=message,
    )


@router.get("/csrf-token", response_model=Envelope, tags=["auth"])
async def csrf_token(
    request: Request, response: Response, ctx: RequestContext = Depends(get_context)
):
    """Return the anti-forgery token bound to the caller's session.

    Opens an anonymous session (and sets its cookie) when the caller has none,
    so that register and login can be protected like every other write.
    """
    runtime = get_runtime()
    session, token, created = await runtime.auth.csrf_token(ctx)
    if created:
        _set_session_cookie(request, response, session)
    return Envelope(
        status="ok",
        data=CsrfTokenResponse(csrf_token=token, header_name=CSRF_HEADER),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(get_context),
):
    """Create a standard user account.

    The new account always gets the ``user`` role and therefore has to pass
    the OTP step before a session is bound to it.

    Raises:
        409: If the email is already registered
        429: If the per-client limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{ctx.client_ip}",
        runtime.settings.rate_limit_login,
        runtime.settings.rate_limit_login_window_seconds,
        scope="register",
    )
    outcome = await runtime.auth.register(body.name, body.email, body.password, ctx)
    if outcome.session is not None:
        _set_session_cookie(request, response, outcome.session)
    return Envelope(
        status="ok",
        data=_auth_response(
            outcome,
            message="Registration successful. Enter the one-time code to finish signing in.",
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(get_context),
):
    """Check email and password.

    Admins and editors are signed in straight away and receive a fresh session
    cookie; standard users get ``requires_otp`` and must call verify-otp.

    Raises:
        401: If the credentials do not match
        429: If the per-email limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.rate_limit_login,
        runtime.settings.rate_limit_login_window_seconds,
        scope="login",
    )
    outcome = await runtime.auth.login(body.email, body.password, ctx)
    if outcome.session is not None:
        _set_session_cookie(request, response, outcome.session)
    message = "OTP sent" if outcome.requires_otp else None
    return Envelope(status="ok", data=_auth_response(outcome, message=message))


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(
    body: VerifyOtpRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(get_context),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:verify:{body.user_id}",
        runtime.settings.rate_limit_otp,
        runtime.settings.rate_limit_otp_window_seconds,
        scope="otp_verify",
    )
    outcome = await runtime.auth.verify_otp(body.user_id, body.otp, ctx)
    _set_session_cookie(request, response, outcome.session)
    return Envelope(status="ok", data=_auth_response(outcome))


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: ResendOtpRequest, ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:resend:{body.user_id}",
        runtime.settings.rate_limit_otp,
        runtime.settings.rate_limit_otp_window_seconds,
        scope="otp_resend",
    )
    code = await runtime.auth.resend_otp(body.user_id, ctx)
    return Envelope(
        status="ok",
        data=ResendOtpResponse(message="A new OTP has been sent", demo_otp=code),
    )


@router.post("/auth/logout", status_code=204, response_class=Response, tags=["auth"])
async def logout(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    await runtime.auth.logout(ctx)
    response = Response(status_code=204)
    clear_session_cookie(response)
    return response


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    user = await runtime.auth.me(ctx)
    return Envelope(
        status="ok",
        data=MeResponse(user=_user_to_response(user) if user else None),
    )


@router.post("/auth/heartbeat", response_model=Envelope, tags=["auth"])
async def heartbeat(ctx: RequestContext = Depends(get_context)):
    """Record user activity so the idle window starts over."""
    runtime = get_runtime()
    active = await runtime.auth.heartbeat(ctx)
    if not active:
        if ctx.reason in (AFK_TIMEOUT, SESSION_EXPIRED):
            raise _http_error(
                "session_expired",
                "session expired",
                status_code=401,
                details={"reason": ctx.reason},
                data={"active": False},
            )
        raise _http_error(
            "unauthorized", "not logged in", status_code=401, data={"active": False}
        )
    return Envelope(status="ok", data={"active": True})


@router.get("/auth/check-activity", response_model=Envelope, tags=["auth"])
async def check_activity(ctx: RequestContext = Depends(get_context)):
    """Report whether the session is still live without counting as activity."""
    runtime = get_runtime()
    status = await runtime.auth.check_activity(ctx)
    return Envelope(
        status="ok", data=ActivityResponse(active=status.active, reason=status.reason)
    )


@router.get("/admin/status", response_model=Envelope, tags=["admin"])
async def admin_status(principal: RequestContext = Depends(get_admin_user)):
    return Envelope(
        status="ok",
        data={"ok": True, "user": _user_to_response(principal.identity)},
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500, description="Maximum users to return"),
    principal: RequestContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[_user_to_response(u) for u in users])
    )


@router.get("/admin/logs", response_model=Envelope, tags=["admin"])
async def admin_security_logs(
    limit: int = Query(
        SECURITY_LOG_CAPACITY,
        ge=1,
        le=SECURITY_LOG_CAPACITY,
        description="Maximum entries to return",
    ),
    principal: RequestContext = Depends(get_admin_user),
):
    """Recent audit records of this process, newest first.

    Emails are masked and codes or secrets redacted exactly as in the log stream.
    """
    return Envelope(
        status="ok",
        data=SecurityLogResponse(
            logs=[SecurityLogEntry(**entry) for entry in recent_security_events(limit)]
        ),
    )


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str, principal: RequestContext = Depends(get_admin_user)
):
    """Delete an account together with its posts, files, codes and sessions.

    Raises:
        400: If admins try to delete themselves
        403: If the target is another admin
        404: If no such user exists
    """
    runtime = get_runtime()
    await runtime.auth.delete_user(principal.identity, user_id, principal)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})


@router.get("/posts/drafts", response_model=Envelope, tags=["posts"])
async def list_draft_posts(principal: RequestContext = Depends(get_content_manager)):
    runtime = get_runtime()
    posts = runtime.store.list_posts()
    return Envelope(
        status="ok",
        data=PostListResponse(
            items=[
                PostResponse(
                    id=p.id, user_id=p.user_id, title=p.title, created_at=p.created_at
                )
                for p in posts
            ]
        ),
    )

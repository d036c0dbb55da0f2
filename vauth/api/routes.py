from __future__ import annotations

import asyncio
import json
from datetime import timezone
from typing import Optional

from fastapi import (
    APIRouter,
    Cookie,
    Depends,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)

from vauth.api.schemas import (
    AdminLoginRequest,
    AdminLoginResponse,
    AutoPurgeRequest,
    AutoPurgeResponse,
    DashboardStatsResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    PrincipalListResponse,
    PrincipalResponse,
    SessionListResponse,
    SessionResponse,
    SessionStatusResponse,
    TokenListResponse,
    TokenResponse,
    VerifyTokenRequest,
    VerifyTokenResponse,
    VirtualTokenRequest,
    VirtualTokenResponse,
)
from vauth.logging import get_logger
from vauth.service.admin import AdminContext
from vauth.service.events import device_topic
from vauth.service.runtime import get_runtime
from vauth.storage.models import TokenStatus, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Close code sent to WebSocket clients that fail admin authentication
WS_UNAUTHORIZED = 4401


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AdminContext:
    runtime = get_runtime()
    ctx = await runtime.admin.authenticate(_bearer_token(authorization))
    if not ctx:
        raise _http_error("unauthorized", "admin authentication required", status_code=401)
    return ctx


def _session_ref(
    header_value: Optional[str], cookie_value: Optional[str]
) -> Optional[str]:
    return header_value or cookie_value


# user authentication
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.coordinator.login(body.username, body.password, _client_ip(request))
    return Envelope(
        status="ok",
        data=LoginResponse(
            device_id=result.device_id, token_expires_at=result.token_expires_at
        ),
    )


@router.post("/auth/verify-token", response_model=Envelope, tags=["auth"])
async def verify_token(body: VerifyTokenRequest, request: Request, response: Response):
    runtime = get_runtime()
    session = await runtime.coordinator.verify_token(
        body.device_id, body.token, _client_ip(request)
    )
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        "session_id",
        session.id,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )
    return Envelope(
        status="ok",
        data=VerifyTokenResponse(session_id=session.id, expires_at=session.expires_at),
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session_status(
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias="session_id"),
):
    runtime = get_runtime()
    view = await runtime.coordinator.session_status(_session_ref(session_id, session_cookie))
    return Envelope(
        status="ok",
        data=SessionStatusResponse(
            authenticated=view.authenticated,
            status=view.outcome.value,
            username=view.principal if view.authenticated else None,
            time_remaining=view.time_remaining,
            duration=view.duration,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias="session_id"),
):
    runtime = get_runtime()
    ended = await runtime.coordinator.logout(_session_ref(session_id, session_cookie))
    response.delete_cookie("session_id", path="/")
    return Envelope(status="ok", data={"logged_out": ended})


# admin console
@router.post("/admin/login", response_model=Envelope, tags=["admin"])
async def admin_login(body: AdminLoginRequest):
    runtime = get_runtime()
    ctx = await runtime.admin.login(body.username, body.password)
    return Envelope(
        status="ok",
        data=AdminLoginResponse(access_token=ctx.access_token, username=ctx.username),
    )


@router.post("/admin/logout", response_model=Envelope, tags=["admin"])
async def admin_logout(admin: AdminContext = Depends(get_admin_user)):
    runtime = get_runtime()
    await runtime.admin.logout(admin.access_token)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/admin/tokens", response_model=Envelope, tags=["admin"])
async def list_tokens(
    status: Optional[str] = Query(None),
    admin: AdminContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    status_filter = None
    if status:
        try:
            status_filter = TokenStatus(status.upper())
        except ValueError:
            raise _http_error(
                "validation_error",
                "invalid status filter",
                status_code=400,
                details={"allowed": [s.value for s in TokenStatus]},
            )
    views = await runtime.coordinator.list_tokens(status_filter)
    items = [
        TokenResponse(
            id=v.token.id,
            device_id=v.token.device_id,
            status=v.token.status.value,
            created_at=v.token.created_at,
            expires_at=v.token.expires_at,
            used_at=v.token.used_at,
            time_remaining=v.time_remaining,
        )
        for v in views
    ]
    return Envelope(status="ok", data=TokenListResponse(items=items))


@router.delete("/admin/tokens/{token_id}", response_model=Envelope, tags=["admin"])
async def delete_token(token_id: str, admin: AdminContext = Depends(get_admin_user)):
    runtime = get_runtime()
    deleted = await runtime.coordinator.delete_token(token_id)
    if not deleted:
        raise _http_error("not_found", "token not found", status_code=404)
    return Envelope(status="ok", data={"deleted": True, "token_id": token_id})


@router.patch("/admin/auto-delete-expired", response_model=Envelope, tags=["admin"])
async def toggle_auto_purge(
    body: AutoPurgeRequest, admin: AdminContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    purged = await runtime.coordinator.set_auto_purge(body.enabled)
    logger.info("admin_auto_purge_toggled", admin=admin.username, enabled=body.enabled, purged=purged)
    return Envelope(status="ok", data=AutoPurgeResponse(enabled=body.enabled, purged=purged))


@router.get("/admin/sessions", response_model=Envelope, tags=["admin"])
async def list_sessions(admin: AdminContext = Depends(get_admin_user)):
    runtime = get_runtime()
    sessions = await runtime.coordinator.list_sessions()
    now = utcnow()
    items = [
        SessionResponse(
            id=s.id,
            username=s.principal,
            device_id=s.device_id,
            origin_ip=s.origin_ip,
            status=s.status.value,
            started_at=s.started_at,
            expires_at=s.expires_at,
            time_remaining=s.time_remaining(now),
            duration=s.duration(now),
        )
        for s in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.post(
    "/admin/sessions/{session_id}/force-logout", response_model=Envelope, tags=["admin"]
)
async def force_logout(session_id: str, admin: AdminContext = Depends(get_admin_user)):
    runtime = get_runtime()
    changed = await runtime.coordinator.force_logout(session_id)
    if not changed:
        raise _http_error("not_found", "active session not found", status_code=404)
    logger.info("admin_forced_logout", admin=admin.username, session_id=session_id)
    return Envelope(status="ok", data={"session_id": session_id, "status": "FORCED_LOGOUT"})


@router.post("/admin/virtual-device/generate-token", response_model=Envelope, tags=["admin"])
async def generate_virtual_token(
    body: VirtualTokenRequest, admin: AdminContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    issued = await runtime.coordinator.issue_virtual_token(body.device_id)
    return Envelope(
        status="ok",
        data=VirtualTokenResponse(
            token_id=issued.token_id,
            device_id=issued.device_id,
            token=issued.plain_secret,
            expires_at=issued.expires_at,
        ),
    )


@router.get("/admin/dashboard-stats", response_model=Envelope, tags=["admin"])
async def dashboard_stats(admin: AdminContext = Depends(get_admin_user)):
    runtime = get_runtime()
    stats = await runtime.coordinator.dashboard_stats()
    return Envelope(
        status="ok",
        data=DashboardStatsResponse(
            total_users=stats.total_users,
            active_tokens=stats.active_tokens,
            expired_tokens=stats.expired_tokens,
            active_sessions=stats.active_sessions,
            auto_purge_enabled=stats.auto_purge_enabled,
        ),
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_users(admin: AdminContext = Depends(get_admin_user)):
    runtime = get_runtime()
    principals = await runtime.coordinator.list_principals()
    items = [
        PrincipalResponse(
            id=p.principal.id,
            username=p.principal.username,
            device_id=p.principal.device_id,
            created_at=p.principal.created_at,
            profile=p.profile,
        )
        for p in principals
    ]
    return Envelope(status="ok", data=PrincipalListResponse(items=items))


# event streams
async def _wait_for_disconnect(ws: WebSocket) -> None:
    while True:
        message = await ws.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _authenticate_ws(ws: WebSocket) -> Optional[AdminContext]:
    runtime = get_runtime()
    try:
        init = await ws.receive_json()
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json")
        await ws.close(code=1003)
        return None
    access_token = init.get("access_token") if isinstance(init, dict) else None
    ctx = await runtime.admin.authenticate(access_token)
    if not ctx:
        await ws.close(code=WS_UNAUTHORIZED)
        return None
    return ctx


async def _stream_topic(ws: WebSocket, topic: str) -> None:
    """Forward broadcast messages for ``topic`` until the client disconnects."""
    runtime = get_runtime()
    queue = runtime.broadcast.subscribe(topic)
    receiver = asyncio.create_task(_wait_for_disconnect(ws))
    try:
        await ws.send_json({"event": "subscribed", "topic": topic})
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait(
                {getter, receiver}, return_when=asyncio.FIRST_COMPLETED
            )
            if receiver in done:
                getter.cancel()
                return
            await ws.send_json(getter.result())
    finally:
        receiver.cancel()
        runtime.broadcast.unsubscribe(topic, queue)


@router.websocket("/admin/events")
async def admin_events(ws: WebSocket):
    """Stream the admin topic to an authenticated console."""
    await ws.accept()
    try:
        ctx = await _authenticate_ws(ws)
        if not ctx:
            return
        logger.info("admin_event_stream_opened", admin=ctx.username)
        await _stream_topic(ws, get_runtime().notifier.admin_topic)
    except WebSocketDisconnect:
        return


@router.websocket("/admin/devices/{device_id}/tokens")
async def virtual_device_tokens(ws: WebSocket, device_id: str):
    """Act as the virtual device: stream tokens delivered to ``device_id``."""
    await ws.accept()
    try:
        ctx = await _authenticate_ws(ws)
        if not ctx:
            return
        logger.info("virtual_device_stream_opened", admin=ctx.username, device_id=device_id)
        await _stream_topic(ws, device_topic(device_id))
    except WebSocketDisconnect:
        return

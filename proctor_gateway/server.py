"""
HTTP and WebSocket surface for the proctor gateway.

Routes:
- POST /v1/portal-access, POST /v1/session-access: the two access gateways
  (body `{action, token, payload?}`).
- /v1/operator/...: link issuance/revocation and session control for
  primary operators (X-Api-Key).
- WS /v1/sessions/{session_id}/live: live session channel.
- GET /v1/health, GET /metrics.

Every endpoint is `async def` so store writes, and therefore change-feed
publishes, happen on the event loop that owns the channel queues.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .artifacts import ArtifactStore, FileArtifactStore
from .auth import OperatorAuth
from .capabilities import CapabilityStore
from .config import PORTAL_TTL_BOUNDS, SUBSTITUTE_TTL_BOUNDS, GatewayConfig
from .errors import (
    PG_E_UNAUTHORIZED,
    GatewayError,
    downstream_failure,
    invalid_input,
    lockdown_active,
    operator_auth_failed,
    rate_limited,
    unauthorized,
)
from .gateway import AccessGateway, PortalGateway, SessionGateway
from .lockdown import StorageLockdownError
from .metrics import instrument_fastapi, record_capability_issued
from .ratelimit import RateLimiter, build_limiter
from .realtime import ChannelId, PubSubHub
from .scoring import summarize_session
from .store import RecordStore
from .sync import SessionSyncEngine
from .tokens import CapabilityKind

logger = logging.getLogger("proctor_gateway.server")

WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011

PORTAL_LINK_PATH = "/portal"
COVER_LINK_PATH = "/session/cover"


# ---------------------------
# Request models
# ---------------------------

class GatewayRequest(BaseModel):
    """Gateway envelope. Field types are checked by the gateway itself."""

    model_config = ConfigDict(extra="ignore")

    action: Any = None
    token: Any = None
    payload: Any = None


class IssueLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ttl_seconds: Optional[int] = Field(default=None, alias="ttlSeconds")


class UnitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    unit_id: str = Field(alias="unitId", min_length=1)


class StatusRequest(BaseModel):
    status: str


# ---------------------------
# App factory
# ---------------------------

def create_app(
    config: Optional[GatewayConfig] = None,
    store: Optional[RecordStore] = None,
    hub: Optional[PubSubHub] = None,
    operator_auth: Optional[OperatorAuth] = None,
    artifacts: Optional[ArtifactStore] = None,
) -> FastAPI:
    """Create the FastAPI application and wire its collaborators."""
    from . import __version__

    config = config or GatewayConfig.from_env()
    store = store or RecordStore(config.db_path)
    hub = hub or PubSubHub(queue_size=config.channel_queue_size)
    operator_auth = operator_auth or OperatorAuth.load_from_env()
    artifacts = artifacts or FileArtifactStore(config.artifact_dir)

    store.add_change_listener(hub.on_store_change)
    capabilities = CapabilityStore(store)
    portal = PortalGateway(capabilities, store)
    session_gateway = SessionGateway(capabilities, store)

    app = FastAPI(
        title="Proctor Gateway",
        description="Delegated access and live session synchronization for proctored screenings",
        version=__version__,
    )
    app.state.config = config
    app.state.store = store
    app.state.hub = hub
    app.state.capabilities = capabilities

    if operator_auth.config_error:
        logger.error("operator key configuration is invalid; operator endpoints will reject all requests")

    # Expired link rows are dead weight; resolution already ignores them.
    try:
        purged = capabilities.purge_expired()
        if purged:
            logger.info("purged %d expired link(s) at startup", purged)
    except (StorageLockdownError, sqlite3.Error) as e:
        logger.warning("startup purge of expired links skipped: %s", e)

    # ---------------------------
    # Error envelope
    # ---------------------------

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        err = invalid_input("Invalid request body", fields=fields)
        return JSONResponse(status_code=err.http_status, content=err.as_dict())

    @app.exception_handler(StorageLockdownError)
    async def _lockdown_handler(request: Request, exc: StorageLockdownError):
        err = lockdown_active()
        return JSONResponse(status_code=err.http_status, content=err.as_dict())

    @app.exception_handler(sqlite3.Error)
    async def _store_error_handler(request: Request, exc: sqlite3.Error):
        logger.error("store failure on %s %s: %s", request.method, request.url.path, exc)
        err = downstream_failure()
        return JSONResponse(status_code=err.http_status, content=err.as_dict())

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------

    def _authorize_metrics(req: Request) -> bool:
        if not config.metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer "):
            return authz.split(" ", 1)[1].strip() == config.metrics_token
        return False

    instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Request size + rate limiting
    # ---------------------------

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        try:
            cl = req.headers.get("content-length")
            if cl is not None and int(cl) > config.max_request_bytes:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})
        except ValueError:
            return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
        return await call_next(req)

    try:
        gateway_limiter: Optional[RateLimiter] = build_limiter(config.gateway_rate_limit)
    except ValueError as e:
        logger.warning("Invalid rate limit PG_RATE_LIMIT_GATEWAY=%r: %s (disabled)", config.gateway_rate_limit, e)
        gateway_limiter = None

    def _rl_key(req: Request) -> str:
        if req.client and req.client.host:
            return f"ip:{req.client.host}"
        return "_anon"

    def _check_rate(req: Request) -> None:
        if gateway_limiter is not None and not gateway_limiter.allow(_rl_key(req)):
            raise rate_limited()

    # ---------------------------
    # Health
    # ---------------------------

    @app.get("/v1/health")
    async def health():
        return {
            "status": "ok" if not store.circuit.is_lockdown_active() else "lockdown",
            "version": __version__,
        }

    # ---------------------------
    # Access gateways
    # ---------------------------

    async def _dispatch(gateway: AccessGateway, req: Request, body: GatewayRequest) -> JSONResponse:
        _check_rate(req)
        result = await gateway.handle(body.action, body.token, body.payload)
        return JSONResponse(status_code=result.status, content=result.body)

    @app.post("/v1/portal-access")
    async def portal_access(req: Request, body: GatewayRequest):
        return await _dispatch(portal, req, body)

    @app.post("/v1/session-access")
    async def session_access(req: Request, body: GatewayRequest):
        return await _dispatch(session_gateway, req, body)

    # ---------------------------
    # Operator API
    # ---------------------------

    async def require_operator(x_api_key: Optional[str] = Header(None, alias="X-Api-Key")) -> str:
        ctx = operator_auth.resolve_context(x_api_key)
        if not ctx.authenticated:
            raise operator_auth_failed(ctx.error or "OPERATOR_AUTH_REQUIRED")
        return str(ctx.operator_id)

    def _engine(session_id: str) -> SessionSyncEngine:
        return SessionSyncEngine(store, hub, session_id, artifacts=artifacts)

    def _issue(subject_id: str, kind: CapabilityKind, ttl: int, operator_id: str, link_path: str) -> Dict[str, Any]:
        others = capabilities.active_count(subject_id, kind)
        issued = capabilities.issue(subject_id, kind, ttl, created_by=operator_id)
        record_capability_issued(kind.value)
        return {
            "token": issued.token,
            "link": f"{link_path}?token={issued.token}",
            "handle": issued.handle.handle,
            "expiresAt": issued.handle.expires_at.isoformat(),
            "otherActiveLinks": others,
        }

    def _requested_ttl(body: Optional[IssueLinkRequest], default: int, bounds) -> int:
        if body is None or body.ttl_seconds is None:
            return default
        lo, hi = bounds
        if not lo <= body.ttl_seconds <= hi:
            raise invalid_input("ttlSeconds out of range", min=lo, max=hi)
        return body.ttl_seconds

    @app.post("/v1/operator/students/{student_id}/portal-links")
    async def issue_portal_link(
        student_id: str,
        body: Optional[IssueLinkRequest] = None,
        operator_id: str = Depends(require_operator),
    ):
        if store.get_student(student_id) is None:
            raise invalid_input("Unknown student")
        ttl = _requested_ttl(body, config.portal_token_ttl_seconds, PORTAL_TTL_BOUNDS)
        return _issue(student_id, CapabilityKind.GUARDIAN_PORTAL, ttl, operator_id, PORTAL_LINK_PATH)

    @app.post("/v1/operator/sessions/{session_id}/cover-links")
    async def issue_cover_link(
        session_id: str,
        body: Optional[IssueLinkRequest] = None,
        operator_id: str = Depends(require_operator),
    ):
        if store.get_session(session_id) is None:
            raise invalid_input("Unknown session")
        ttl = _requested_ttl(body, config.substitute_token_ttl_seconds, SUBSTITUTE_TTL_BOUNDS)
        return _issue(session_id, CapabilityKind.SUBSTITUTE_PROCTOR, ttl, operator_id, COVER_LINK_PATH)

    @app.delete("/v1/operator/links/{handle}")
    async def revoke_link(handle: str, operator_id: str = Depends(require_operator)):
        if not capabilities.revoke(handle):
            raise invalid_input("Unknown link")
        logger.info("operator %s revoked link %s", operator_id, handle)
        return {"revoked": True, "handle": handle}

    @app.post("/v1/operator/sessions/{session_id}/navigate")
    async def navigate(session_id: str, body: UnitRequest, operator_id: str = Depends(require_operator)):
        return {"session": await _engine(session_id).navigate_to_unit(body.unit_id)}

    @app.post("/v1/operator/sessions/{session_id}/units")
    async def add_unit(session_id: str, body: UnitRequest, operator_id: str = Depends(require_operator)):
        return {"session": await _engine(session_id).add_unit(body.unit_id)}

    @app.post("/v1/operator/sessions/{session_id}/complete-unit")
    async def complete_unit(session_id: str, operator_id: str = Depends(require_operator)):
        return {"session": await _engine(session_id).complete_current_unit()}

    @app.post("/v1/operator/sessions/{session_id}/responses")
    async def record_response(
        session_id: str,
        body: Dict[str, Any] = Body(...),
        operator_id: str = Depends(require_operator),
    ):
        return {"response": await _engine(session_id).record_response(body)}

    @app.post("/v1/operator/sessions/{session_id}/status")
    async def set_status(session_id: str, body: StatusRequest, operator_id: str = Depends(require_operator)):
        return {"session": await _engine(session_id).set_status(body.status)}

    @app.get("/v1/operator/sessions/{session_id}/skills-summary")
    async def skills_summary(session_id: str, operator_id: str = Depends(require_operator)):
        session = store.get_session(session_id)
        if session is None:
            raise invalid_input("Unknown session")
        observations = session.get("observations") or {}
        selected = []
        if isinstance(observations, dict):
            selected = observations.get("selected_units") or []
        units = {u["id"]: u for u in store.list_units()}
        rollups = summarize_session(store.list_responses(session_id), units, selected_unit_ids=selected)
        return {"sessionId": session_id, "units": [r.to_dict() for r in rollups]}

    @app.post("/v1/operator/sessions/{session_id}/recordings/{unit_id}")
    async def upload_recording(
        session_id: str,
        unit_id: str,
        req: Request,
        operator_id: str = Depends(require_operator),
    ):
        data = await req.body()
        content_type = req.headers.get("content-type") or "audio/webm"
        path = await _engine(session_id).store_recording(unit_id, data, content_type)
        return {"path": path}

    # ---------------------------
    # Live session channel
    # ---------------------------

    def _authorize_live(websocket: WebSocket, session_id: str) -> Optional[str]:
        """Returns the access level for this connection, or None to refuse it."""
        api_key = websocket.headers.get("x-api-key")
        if api_key:
            return "operator" if operator_auth.resolve_context(api_key).authenticated else None
        try:
            subject = session_gateway.resolve_subject(websocket.query_params.get("token"))
        except GatewayError:
            return None
        return "substitute" if subject == session_id else None

    async def _substitute_still_valid(websocket: WebSocket, token: Optional[str], session_id: str) -> bool:
        """False, with the connection closed, once the link stops resolving to this session.

        Transient store failures propagate as GatewayError and only skip the message.
        """
        try:
            subject: Optional[str] = session_gateway.resolve_subject(token)
        except GatewayError as e:
            if e.code != PG_E_UNAUTHORIZED:
                raise
            subject = None
        if subject == session_id:
            return True
        await websocket.send_json({"event": "error", "payload": unauthorized().as_dict()})
        await websocket.close(code=WS_POLICY_VIOLATION)
        return False

    async def _forward(websocket: WebSocket, subscription) -> None:
        while True:
            message = await subscription.get()
            await websocket.send_json(message.to_dict())

    async def _handle_client_message(engine: SessionSyncEngine, msg: Any) -> None:
        if not isinstance(msg, dict):
            raise invalid_input("message must be an object")
        kind = msg.get("type")
        if kind == "patch":
            await engine.broadcast_state(msg.get("patch") or {})
        elif kind == "navigate":
            await engine.navigate_to_unit(msg.get("unitId") or msg.get("unit_id"))
        elif kind == "record_response":
            await engine.record_response(msg.get("response") or {})
        else:
            raise invalid_input("Unknown message type")

    @app.websocket("/v1/sessions/{session_id}/live")
    async def live_session(websocket: WebSocket, session_id: str):
        try:
            access_level = _authorize_live(websocket, session_id)
            channel = ChannelId.for_session(session_id)
        except ValueError:
            access_level = None
        if access_level is None:
            await websocket.close(code=WS_POLICY_VIOLATION)
            return

        await websocket.accept()
        engine = _engine(session_id)
        subscription = hub.subscribe(channel)
        forwarder: Optional[asyncio.Task] = None
        try:
            try:
                snapshot = await engine.load()
            except GatewayError as e:
                await websocket.send_json({"event": "error", "payload": e.as_dict()})
                await websocket.close(code=WS_INTERNAL_ERROR)
                return
            snapshot["accessLevel"] = access_level
            await websocket.send_json({"event": "snapshot", "payload": snapshot})
            forwarder = asyncio.create_task(_forward(websocket, subscription))

            token = websocket.query_params.get("token")
            while True:
                raw = await websocket.receive_text()
                try:
                    # Revoked or expired links lose access on open connections too.
                    if access_level == "substitute" and not await _substitute_still_valid(websocket, token, session_id):
                        return
                    try:
                        msg = json.loads(raw)
                    except ValueError:
                        raise invalid_input("message must be valid JSON") from None
                    await _handle_client_message(engine, msg)
                except GatewayError as e:
                    await websocket.send_json({"event": "error", "payload": e.as_dict()})
        except WebSocketDisconnect:
            logger.debug("live channel %s disconnected", channel)
        finally:
            if forwarder is not None:
                forwarder.cancel()
            subscription.close()

    return app


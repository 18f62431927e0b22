"""
Access gateways.

Turn an opaque capability token plus an action into a scope-limited
operation. Two instances share one state machine:

    UNVALIDATED -> VALIDATING -> AUTHORIZED | REJECTED

- Portal gateway: guardian-portal tokens, subject = student id.
- Session gateway: substitute-proctor tokens, subject = session id.

Security Properties:
- A missing token is rejected before any store round-trip
- Unknown and expired tokens produce the same error body
- Dispatch is by explicit allow-list; anything else is "unsupported action"
- Handlers receive only the resolved subject id; client payloads are parsed
  with models that have no subject field, so a token for subject A cannot
  address subject B's rows
- Store failures are logged here with context and surfaced as a generic
  retryable error
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError

from .capabilities import CapabilityStore
from .crypto import _now_utc
from .errors import (
    GatewayError,
    downstream_failure,
    invalid_input,
    lockdown_active,
    token_required,
    unauthorized,
    unsupported_action,
)
from .lockdown import StorageLockdownError
from .metrics import record_gateway_call
from .store import RecordStore
from .tokens import CapabilityKind

logger = logging.getLogger("proctor_gateway.gateway")

Handler = Callable[[str, Mapping[str, Any]], Awaitable[Dict[str, Any]]]


class GatewayState(Enum):
    UNVALIDATED = "unvalidated"
    VALIDATING = "validating"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"


class AccessLevel(Enum):
    """Tier reported to clients so they can disable operator-only affordances."""

    OPERATOR = "operator"
    SUBSTITUTE = "substitute"
    GUARDIAN = "guardian"


STANDARD_TEACHER_QUESTIONS = (
    "How does the student perform in reading compared to grade-level peers?",
    "Does the student struggle with decoding unfamiliar words?",
    "How is the student's reading fluency (speed and accuracy)?",
    "Does the student have difficulty understanding what they read?",
    "Are there any attention or behavior concerns during reading instruction?",
    "Has the student received any reading interventions? If so, what was the response?",
    "Does the student have an IEP, 504, or receive special education services?",
    "Are there concerns about the student's writing or spelling?",
)


@dataclass
class GatewayResponse:
    status: int
    body: Dict[str, Any]
    state: GatewayState
    subject_id: Optional[str] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.state is GatewayState.AUTHORIZED and self.status == 200


# ---------------------------
# Payload models
# ---------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


class UpdateChecklistPayload(_Payload):
    item_id: str = Field(alias="itemId", min_length=1, max_length=64)
    is_completed: StrictBool = Field(alias="isCompleted")


class SubmitScalePayload(_Payload):
    scale_type: str = Field(alias="scaleType", min_length=1, max_length=64)
    responses: Dict[str, Any]


class TeacherInputPayload(_Payload):
    teacher_email: str = Field(alias="teacherEmail", pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=254)
    teacher_name: str = Field(alias="teacherName", min_length=1, max_length=200)
    questions: List[str] = Field(default_factory=list)
    custom_question: Optional[str] = Field(default=None, alias="customQuestion", max_length=1000)


def _parse(model: type, payload: Mapping[str, Any]):
    try:
        return model.model_validate(dict(payload))
    except ValidationError as e:
        raise invalid_input("Invalid payload", fields=[".".join(map(str, err["loc"])) for err in e.errors()])


# ---------------------------
# Gateway base
# ---------------------------

class AccessGateway:
    name = "gateway"
    kind: CapabilityKind
    access_level: AccessLevel

    def __init__(self, capabilities: CapabilityStore, store: RecordStore):
        self.capabilities = capabilities
        self.store = store
        self._actions: Dict[str, Handler] = self.allowed_actions()

    def allowed_actions(self) -> Dict[str, Handler]:
        raise NotImplementedError

    @property
    def permitted(self) -> List[str]:
        return sorted(self._actions)

    def resolve_subject(self, token: Any) -> str:
        """Validate a token for this gateway's kind. Raises GatewayError."""
        if not isinstance(token, str) or not token.strip():
            raise token_required()
        try:
            subject = self.capabilities.resolve(token, self.kind)
        except StorageLockdownError:
            raise lockdown_active()
        except sqlite3.Error as e:
            logger.error("%s token resolution failed: %s", self.name, e)
            raise downstream_failure() from e
        if subject is None:
            raise unauthorized()
        return subject

    async def handle(self, action: Any, token: Any, payload: Any = None) -> GatewayResponse:
        state = GatewayState.UNVALIDATED
        subject: Optional[str] = None
        action_label = action if isinstance(action, str) and action in self._actions else "other"
        try:
            state = GatewayState.VALIDATING
            subject = self.resolve_subject(token)
            state = GatewayState.AUTHORIZED

            handler = self._actions.get(action) if isinstance(action, str) else None
            if handler is None:
                raise unsupported_action()
            if payload is not None and not isinstance(payload, Mapping):
                raise invalid_input("payload must be an object")

            try:
                body = await handler(subject, payload or {})
            except (GatewayError, StorageLockdownError):
                raise
            except sqlite3.Error as e:
                logger.error("%s action %s failed for subject %s: %s", self.name, action, subject, e)
                raise downstream_failure() from e
        except StorageLockdownError:
            err = lockdown_active()
            record_gateway_call(self.name, action_label, err.code)
            return GatewayResponse(err.http_status, err.as_dict(), GatewayState.REJECTED)
        except GatewayError as err:
            if state is not GatewayState.AUTHORIZED:
                state = GatewayState.REJECTED
            record_gateway_call(self.name, action_label, err.code)
            return GatewayResponse(err.http_status, err.as_dict(), state, subject)

        record_gateway_call(self.name, action_label, "ok")
        return GatewayResponse(200, body, state, subject)


# ---------------------------
# Portal gateway (guardian, subject = student id)
# ---------------------------

class PortalGateway(AccessGateway):
    name = "portal"
    kind = CapabilityKind.GUARDIAN_PORTAL
    access_level = AccessLevel.GUARDIAN

    def allowed_actions(self) -> Dict[str, Handler]:
        return {
            "validate": self._validate,
            "get_data": self._get_data,
            "update_checklist": self._update_checklist,
            "submit_scale": self._submit_scale,
            "request_teacher_input": self._request_teacher_input,
        }

    async def _validate(self, student_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {"valid": True, "studentId": student_id}

    async def _get_data(self, student_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        student = self.store.get_student(student_id)
        if student is not None:
            student = {
                k: student.get(k)
                for k in ("id", "full_name", "grade", "school", "risk_level", "primary_concerns")
            }

        latest = self.store.latest_session_for_student(student_id)
        session = None
        domain_scores: List[Dict[str, Any]] = []
        if latest is not None:
            session = {k: latest.get(k) for k in ("id", "status", "started_at", "ended_at")}
            session["session_summaries"] = self.store.get_session_summary(latest["id"])
            domain_scores = self.store.list_domain_scores(latest["id"])

        return {
            "student": student,
            "session": session,
            "domainScores": domain_scores,
            "checklistItems": self.store.list_checklist_items(student_id),
            "parentScales": self.store.list_parent_scales(student_id),
            "teacherRequests": self.store.list_teacher_requests(student_id),
        }

    async def _update_checklist(self, student_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        p = _parse(UpdateChecklistPayload, payload)
        completed_at = _now_utc().isoformat() if p.is_completed else None
        updated = self.store.set_checklist_completion(student_id, p.item_id, p.is_completed, completed_at)
        if not updated:
            # Same answer for "no such item" and "item belongs to someone else".
            raise invalid_input("Unknown checklist item")
        return {"success": True}

    async def _submit_scale(self, student_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        p = _parse(SubmitScalePayload, payload)
        self.store.upsert_parent_scale(student_id, p.scale_type, p.responses, _now_utc().isoformat())
        return {"success": True}

    async def _request_teacher_input(self, student_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        p = _parse(TeacherInputPayload, payload)
        unknown = [q for q in p.questions if q not in STANDARD_TEACHER_QUESTIONS]
        if unknown:
            raise invalid_input("Questions must come from the standard question set")
        questions = list(dict.fromkeys(p.questions)) or list(STANDARD_TEACHER_QUESTIONS)
        if p.custom_question:
            questions.append(p.custom_question)
        row = self.store.create_teacher_request(
            student_id, questions, teacher_email=p.teacher_email, teacher_name=p.teacher_name
        )
        return {"success": True, "requestId": row["id"]}


# ---------------------------
# Session gateway (substitute proctor, subject = session id)
# ---------------------------

class SessionGateway(AccessGateway):
    name = "session"
    kind = CapabilityKind.SUBSTITUTE_PROCTOR
    access_level = AccessLevel.SUBSTITUTE

    def allowed_actions(self) -> Dict[str, Handler]:
        return {
            "validate": self._validate,
            "get_session_data": self._get_session_data,
        }

    async def _validate(self, session_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {"valid": True, "sessionId": session_id, "accessLevel": self.access_level.value}

    async def _get_session_data(self, session_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        session = self.store.get_session(session_id)
        if session is None:
            logger.error("session gateway: token resolves to missing session %s", session_id)
            raise downstream_failure()

        student = self.store.get_student(session["student_id"])
        session["student"] = (
            {k: student.get(k) for k in ("id", "full_name", "grade", "date_of_birth", "primary_concerns")}
            if student is not None
            else None
        )
        appointment = self.store.get_appointment(session["appointment_id"]) if session.get("appointment_id") else None
        session["appointment"] = (
            {k: appointment.get(k) for k in ("scheduled_at", "zoom_join_url")} if appointment is not None else None
        )

        return {
            "session": session,
            "units": self.store.list_units(),
            "responses": self.store.list_responses(session_id),
            "accessLevel": self.access_level.value,
        }

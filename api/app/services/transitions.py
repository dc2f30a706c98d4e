from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from app.schemas.applications import InterviewPayload
from app.services.authorizer import authorize
from app.services.errors import InvalidPayloadError, TransitionDeniedError
from app.services.repository import with_persistence_timeout
from app.services.side_effects import CompletedTransition, SideEffectDispatcher
from app.services.status_graph import DEFAULT_STATUS_GRAPH, ActorRole, ApplicationStatus, StatusGraph

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True, slots=True)
class TransitionRequest:
    application_id: str
    target_status: ApplicationStatus
    actor_role: ActorRole
    actor_id: str | None = None
    expected_status: ApplicationStatus | None = None
    interview: InterviewPayload | None = None
    reason: str | None = None


def validate_interview_payload(payload: InterviewPayload | None, *, now: datetime) -> dict[str, Any]:
    if payload is None:
        raise InvalidPayloadError("an interview date and time is required to schedule an interview")
    scheduled_at = payload.scheduled_at
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
    if scheduled_at <= now:
        raise InvalidPayloadError("interview date and time must be in the future")
    return {"scheduled_at": scheduled_at, "notes": payload.notes}


class TransitionExecutor:
    def __init__(
        self,
        *,
        repository: Any,
        dispatcher: SideEffectDispatcher,
        persistence_timeout_seconds: float,
        graph: StatusGraph = DEFAULT_STATUS_GRAPH,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.persistence_timeout_seconds = persistence_timeout_seconds
        self.graph = graph

    async def execute(self, request: TransitionRequest, *, now: datetime | None = None) -> dict[str, Any]:
        requested_at = now or datetime.now(timezone.utc)
        with tracer.start_as_current_span("lifecycle.transition") as span:
            span.set_attribute("application.id", request.application_id)
            span.set_attribute("application.target_status", request.target_status.value)
            span.set_attribute("actor.role", request.actor_role.value)

            application = await with_persistence_timeout(
                self.repository.get_application(application_id=request.application_id),
                timeout_seconds=self.persistence_timeout_seconds,
            )
            current = ApplicationStatus(application["status"])
            span.set_attribute("application.current_status", current.value)

            self._reject_stale(request, current)
            decision = authorize(current, request.target_status, request.actor_role, self.graph)
            if not decision.allowed:
                logger.info(
                    "transition denied application_id=%s from=%s to=%s role=%s reason=%s",
                    request.application_id,
                    current.value,
                    request.target_status.value,
                    request.actor_role.value,
                    decision.reason,
                )
                decision.raise_for_denial()

            edge = self.graph.edge(current, request.target_status)
            payload_required = edge is not None and edge.payload_required
            interview = validate_interview_payload(request.interview, now=requested_at) if payload_required else None

            updated = await with_persistence_timeout(
                self.repository.apply_transition(
                    application_id=request.application_id,
                    expected_status=current.value,
                    expected_version=application["version"],
                    to_status=request.target_status.value,
                    actor_role=request.actor_role.value,
                    actor_id=request.actor_id,
                    interview=interview,
                    reason=request.reason,
                ),
                timeout_seconds=self.persistence_timeout_seconds,
            )
            if updated is None:
                logger.info(
                    "transition lost compare-and-swap application_id=%s from=%s to=%s",
                    request.application_id,
                    current.value,
                    request.target_status.value,
                )
                raise TransitionDeniedError(
                    "stale-state",
                    "application changed while this request was being processed; reload and retry",
                )

            logger.info(
                "transition applied application_id=%s from=%s to=%s role=%s version=%s",
                request.application_id,
                current.value,
                request.target_status.value,
                request.actor_role.value,
                updated["version"],
            )
            self.dispatcher.schedule_transition(
                CompletedTransition(
                    application=updated,
                    from_status=current,
                    to_status=request.target_status,
                    actor_role=request.actor_role,
                    actor_id=request.actor_id,
                    reason=request.reason,
                )
            )
            return updated

    def _reject_stale(self, request: TransitionRequest, current: ApplicationStatus) -> None:
        # Terminal applications are reported as terminal by the authorizer instead.
        if self.graph.is_terminal(current):
            return
        if request.target_status == current:
            raise TransitionDeniedError("stale-state", f"application is already {current.value.replace('_', ' ')}")
        if request.expected_status is not None and request.expected_status != current:
            raise TransitionDeniedError(
                "stale-state",
                f"application is {current.value.replace('_', ' ')}, not {request.expected_status.value.replace('_', ' ')}",
            )

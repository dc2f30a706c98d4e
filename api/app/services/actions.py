"""Presentation of the lifecycle actions available to an actor.

Every outgoing edge of the current status is listed, in graph declaration
order, whether or not the actor may take it. Denied actions stay in the
list with ``enabled=False`` and the authorizer's reason so a client can
render a disabled control with an explanation instead of hiding it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.schemas.applications import InterviewPayload
from app.services.authorizer import authorize
from app.services.status_graph import DEFAULT_STATUS_GRAPH, ActorRole, ApplicationStatus, StatusGraph


@dataclass(frozen=True, slots=True)
class ActionPresentation:
    label: str
    icon: str


ACTION_PRESENTATION: dict[ApplicationStatus, ActionPresentation] = {
    ApplicationStatus.SUBMITTED: ActionPresentation(label="Resubmit", icon="📨"),
    ApplicationStatus.UNDER_REVIEW: ActionPresentation(label="Start Review", icon="👀"),
    ApplicationStatus.SHORTLISTED: ActionPresentation(label="Shortlist", icon="⭐"),
    ApplicationStatus.INTERVIEW_SCHEDULED: ActionPresentation(label="Schedule Interview", icon="📅"),
    ApplicationStatus.ACCEPTED: ActionPresentation(label="Accept", icon="✅"),
    ApplicationStatus.REJECTED: ActionPresentation(label="Reject", icon="❌"),
    ApplicationStatus.WITHDRAWN: ActionPresentation(label="Withdraw", icon="↩️"),
}


@dataclass(frozen=True, slots=True)
class Action:
    target_status: ApplicationStatus
    label: str
    icon: str
    confirm_required: bool
    enabled: bool
    block_reason: str | None
    block_message: str | None
    payload_schema: dict[str, Any] | None


def interview_payload_schema() -> dict[str, Any]:
    return InterviewPayload.model_json_schema()


def list_actions(
    current: ApplicationStatus,
    role: ActorRole,
    graph: StatusGraph = DEFAULT_STATUS_GRAPH,
) -> list[Action]:
    actions: list[Action] = []
    for edge in graph.edges_from(current):
        decision = authorize(current, edge.to_status, role, graph)
        presentation = ACTION_PRESENTATION[edge.to_status]
        actions.append(
            Action(
                target_status=edge.to_status,
                label=presentation.label,
                icon=presentation.icon,
                confirm_required=edge.confirm_required,
                enabled=decision.allowed,
                block_reason=decision.reason,
                block_message=decision.message,
                payload_schema=interview_payload_schema() if edge.payload_required else None,
            )
        )
    return actions

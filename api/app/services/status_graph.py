from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class ApplicationStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    SHORTLISTED = "shortlisted"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ActorRole(str, Enum):
    STUDENT = "student"
    EMPLOYER = "employer"
    ADMIN = "admin"


TERMINAL_STATUSES = frozenset({ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED, ApplicationStatus.WITHDRAWN})
CONFIRM_REQUIRED_TARGETS = frozenset({ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED})
PAYLOAD_REQUIRED_TARGETS = frozenset({ApplicationStatus.INTERVIEW_SCHEDULED})


@dataclass(frozen=True, slots=True)
class TransitionEdge:
    from_status: ApplicationStatus
    to_status: ApplicationStatus
    roles: frozenset[ActorRole]
    confirm_required: bool
    payload_required: bool

    def permits(self, role: ActorRole) -> bool:
        return role in self.roles


_S = ApplicationStatus
_R = ActorRole

# Declaration order is the order actions are presented in.
BASE_EDGES: tuple[tuple[ApplicationStatus, ApplicationStatus, ActorRole], ...] = (
    (_S.SUBMITTED, _S.UNDER_REVIEW, _R.EMPLOYER),
    (_S.SUBMITTED, _S.WITHDRAWN, _R.STUDENT),
    (_S.UNDER_REVIEW, _S.SHORTLISTED, _R.EMPLOYER),
    (_S.UNDER_REVIEW, _S.REJECTED, _R.EMPLOYER),
    (_S.UNDER_REVIEW, _S.WITHDRAWN, _R.STUDENT),
    (_S.SHORTLISTED, _S.INTERVIEW_SCHEDULED, _R.EMPLOYER),
    (_S.SHORTLISTED, _S.REJECTED, _R.EMPLOYER),
    (_S.SHORTLISTED, _S.WITHDRAWN, _R.STUDENT),
    (_S.INTERVIEW_SCHEDULED, _S.ACCEPTED, _R.EMPLOYER),
    (_S.INTERVIEW_SCHEDULED, _S.REJECTED, _R.EMPLOYER),
)


class StatusGraph:
    """Directed graph of legal application status transitions.

    Built once and never mutated; lookups are safe from any number of
    concurrent readers.
    """

    def __init__(self, edges: Iterable[TransitionEdge]) -> None:
        self._edges: dict[tuple[ApplicationStatus, ApplicationStatus], TransitionEdge] = {}
        self._outgoing: dict[ApplicationStatus, tuple[TransitionEdge, ...]] = {status: () for status in ApplicationStatus}
        for edge in edges:
            key = (edge.from_status, edge.to_status)
            if key in self._edges:
                raise ValueError(f"duplicate transition edge: {edge.from_status.value} -> {edge.to_status.value}")
            self._edges[key] = edge
            self._outgoing[edge.from_status] = (*self._outgoing[edge.from_status], edge)

    def edges_from(self, status: ApplicationStatus) -> tuple[TransitionEdge, ...]:
        return self._outgoing[status]

    def edge(self, from_status: ApplicationStatus, to_status: ApplicationStatus) -> TransitionEdge | None:
        return self._edges.get((from_status, to_status))

    def is_terminal(self, status: ApplicationStatus) -> bool:
        return not self._outgoing[status]

    def __iter__(self):
        for status in ApplicationStatus:
            yield from self._outgoing[status]


def build_status_graph(
    admin_override_targets: Iterable[ApplicationStatus | str] = (ApplicationStatus.REJECTED,),
) -> StatusGraph:
    """Build the lifecycle graph with admin override edges merged in.

    For every non-terminal source the admin role is added to an existing
    edge into an override target, or a new admin-only edge is appended
    after that source's base edges. Override targets must be terminal
    statuses so moderation never opens new paths through the lifecycle.
    """
    targets: list[ApplicationStatus] = []
    for raw_target in admin_override_targets:
        target = ApplicationStatus(raw_target)
        if target not in TERMINAL_STATUSES:
            raise ValueError(f"admin override target must be terminal: {target.value}")
        if target not in targets:
            targets.append(target)

    ordered: dict[tuple[ApplicationStatus, ApplicationStatus], set[ActorRole]] = {}
    for from_status in ApplicationStatus:
        for edge_from, edge_to, role in BASE_EDGES:
            if edge_from == from_status:
                ordered.setdefault((edge_from, edge_to), set()).add(role)
        if from_status in TERMINAL_STATUSES:
            continue
        for target in targets:
            ordered.setdefault((from_status, target), set()).add(ActorRole.ADMIN)

    return StatusGraph(
        TransitionEdge(
            from_status=from_status,
            to_status=to_status,
            roles=frozenset(roles),
            confirm_required=to_status in CONFIRM_REQUIRED_TARGETS,
            payload_required=to_status in PAYLOAD_REQUIRED_TARGETS,
        )
        for (from_status, to_status), roles in ordered.items()
    )


DEFAULT_STATUS_GRAPH = build_status_graph()

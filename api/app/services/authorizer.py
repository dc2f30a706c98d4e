from __future__ import annotations

from dataclasses import dataclass

from app.services.errors import DenialReason, TransitionDeniedError
from app.services.status_graph import DEFAULT_STATUS_GRAPH, ActorRole, ApplicationStatus, StatusGraph


@dataclass(frozen=True, slots=True)
class TransitionDecision:
    allowed: bool
    reason: DenialReason | None = None
    message: str | None = None

    def raise_for_denial(self) -> None:
        # Denied decisions always carry a reason.
        if self.reason is not None:
            raise TransitionDeniedError(self.reason, self.message or self.reason)


ALLOWED = TransitionDecision(allowed=True)


def _label(status: ApplicationStatus) -> str:
    return status.value.replace("_", " ")


def authorize(
    current: ApplicationStatus,
    target: ApplicationStatus,
    role: ActorRole,
    graph: StatusGraph = DEFAULT_STATUS_GRAPH,
) -> TransitionDecision:
    if graph.is_terminal(current):
        return TransitionDecision(
            allowed=False,
            reason="terminal",
            message=f"application is {_label(current)}; no further status changes are possible",
        )

    edge = graph.edge(current, target)
    if edge is None:
        return TransitionDecision(
            allowed=False,
            reason="no-such-edge",
            message=f"cannot move an application from {_label(current)} to {_label(target)}",
        )

    if not edge.permits(role):
        permitted = " or ".join(sorted(r.value for r in edge.roles))
        return TransitionDecision(
            allowed=False,
            reason="role-not-permitted",
            message=f"only the {permitted} can move an application from {_label(current)} to {_label(target)}",
        )

    return ALLOWED

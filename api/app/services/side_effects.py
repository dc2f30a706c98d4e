"""Compensating actions triggered by completed lifecycle changes.

Effects are planned by pure functions and sent one by one off the path of
the change that triggered them. A failed or slow sink is logged and
skipped; it never rolls back, delays or fails that change.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from app.services.status_graph import ActorRole, ApplicationStatus

logger = logging.getLogger(__name__)

INTERVIEW_DATE_FORMAT = "%A, %d %B %Y at %H:%M %Z"

EffectKind = Literal["notification", "audit"]


class NotificationSink(Protocol):
    async def enqueue_notification(self, *, user_id: str, template_kind: str, data: dict[str, Any]) -> None:
        ...


class AuditSink(Protocol):
    async def record_audit_event(
        self,
        *,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor_role: str | None,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        ...


@dataclass(frozen=True, slots=True)
class CompletedTransition:
    application: dict[str, Any]
    from_status: ApplicationStatus
    to_status: ApplicationStatus
    actor_role: ActorRole
    actor_id: str | None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class SideEffect:
    kind: EffectKind
    name: str
    target_id: str
    data: dict[str, Any] = field(default_factory=dict)
    actor_role: ActorRole | None = None
    actor_id: str | None = None


def format_interview_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.strftime(INTERVIEW_DATE_FORMAT)


def effects_for_transition(
    transition: CompletedTransition,
    *,
    notify_on_status_change: bool = True,
) -> list[SideEffect]:
    application = transition.application
    application_id = application["id"]
    base = {
        "application_id": application_id,
        "internship_id": application["internship_id"],
        "from_status": transition.from_status.value,
        "to_status": transition.to_status.value,
    }
    effects: list[SideEffect] = []

    if transition.to_status == ApplicationStatus.INTERVIEW_SCHEDULED:
        interview = application.get("interview") or {}
        scheduled_at = interview.get("scheduled_at")
        if scheduled_at is None:
            raise ValueError("interview_scheduled transition without an interview schedule")
        effects.append(
            SideEffect(
                kind="notification",
                name="interview_scheduled",
                target_id=application["student_id"],
                data={
                    **base,
                    "scheduled_at": scheduled_at.isoformat(),
                    "scheduled_at_display": format_interview_datetime(scheduled_at),
                    "notes": interview.get("notes"),
                },
            )
        )
    elif notify_on_status_change:
        recipient = application["employer_id"] if transition.actor_role == ActorRole.STUDENT else application["student_id"]
        effects.append(
            SideEffect(
                kind="notification",
                name="application_status_changed",
                target_id=recipient,
                data=base,
            )
        )

    effects.append(
        SideEffect(
            kind="audit",
            name="status_changed",
            target_id=application_id,
            data={**base, "reason": transition.reason},
            actor_role=transition.actor_role,
            actor_id=transition.actor_id,
        )
    )

    if transition.to_status == ApplicationStatus.ACCEPTED:
        # Consumed by the payment milestone service to open escrow.
        effects.append(
            SideEffect(
                kind="audit",
                name="application_accepted",
                target_id=application_id,
                data={
                    **base,
                    "student_id": application["student_id"],
                    "employer_id": application["employer_id"],
                },
                actor_role=transition.actor_role,
                actor_id=transition.actor_id,
            )
        )

    if transition.actor_role == ActorRole.ADMIN:
        effects.append(
            SideEffect(
                kind="audit",
                name="moderation_override",
                target_id=application_id,
                data={**base, "reason": transition.reason},
                actor_role=transition.actor_role,
                actor_id=transition.actor_id,
            )
        )

    return effects


def effects_for_submission(application: dict[str, Any]) -> list[SideEffect]:
    data = {
        "application_id": application["id"],
        "internship_id": application["internship_id"],
        "student_id": application["student_id"],
    }
    return [
        SideEffect(
            kind="notification",
            name="new_application",
            target_id=application["employer_id"],
            data=data,
        ),
        SideEffect(
            kind="audit",
            name="application_submitted",
            target_id=application["id"],
            data=data,
            actor_role=ActorRole.STUDENT,
            actor_id=application["student_id"],
        ),
    ]


EffectScheduler = Callable[..., Any]

_background_tasks: set[asyncio.Task[Any]] = set()


def _forget_task(task: asyncio.Task[Any]) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("background side effects failed task=%s", task.get_name(), exc_info=error)


async def drain_background_effects() -> None:
    """Wait for side effects still running on detached tasks."""
    while True:
        pending = [task for task in _background_tasks if not task.done()]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


class SideEffectDispatcher:
    """Sends effects off the caller's path.

    With a ``scheduler`` (for example ``BackgroundTasks.add_task``) the
    dispatch runs after the response is sent; otherwise it runs on a
    tracked asyncio task.
    """

    def __init__(
        self,
        *,
        notifications: NotificationSink,
        audit: AuditSink,
        timeout_seconds: float = 2.0,
        notify_on_status_change: bool = True,
        scheduler: EffectScheduler | None = None,
    ) -> None:
        self.notifications = notifications
        self.audit = audit
        self.timeout_seconds = timeout_seconds
        self.notify_on_status_change = notify_on_status_change
        self.scheduler = scheduler

    def schedule_transition(self, transition: CompletedTransition) -> None:
        self._schedule(self.dispatch_transition, transition)

    def schedule_submission(self, application: dict[str, Any]) -> None:
        self._schedule(self.dispatch_submission, application)

    def _schedule(self, func: Callable[[Any], Awaitable[list[SideEffect]]], arg: Any) -> None:
        if self.scheduler is not None:
            self.scheduler(func, arg)
            return
        task = asyncio.create_task(func(arg), name=f"side-effects:{func.__name__}")
        _background_tasks.add(task)
        task.add_done_callback(_forget_task)

    async def dispatch_transition(self, transition: CompletedTransition) -> list[SideEffect]:
        try:
            effects = effects_for_transition(transition, notify_on_status_change=self.notify_on_status_change)
        except ValueError:
            logger.exception("side effect planning failed application_id=%s", transition.application.get("id"))
            return []
        return await self.dispatch(effects)

    async def dispatch_submission(self, application: dict[str, Any]) -> list[SideEffect]:
        return await self.dispatch(effects_for_submission(application))

    async def dispatch(self, effects: list[SideEffect]) -> list[SideEffect]:
        """Send each effect independently and return the ones that failed."""
        failed: list[SideEffect] = []
        for effect in effects:
            try:
                await asyncio.wait_for(self._send(effect), timeout=self.timeout_seconds)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "side effect failed kind=%s name=%s target_id=%s",
                    effect.kind,
                    effect.name,
                    effect.target_id,
                )
                failed.append(effect)
        return failed

    async def _send(self, effect: SideEffect) -> None:
        if effect.kind == "notification":
            await self.notifications.enqueue_notification(
                user_id=effect.target_id,
                template_kind=effect.name,
                data=effect.data,
            )
            return
        await self.audit.record_audit_event(
            entity_type="application",
            entity_id=effect.target_id,
            event_type=effect.name,
            actor_role=effect.actor_role.value if effect.actor_role else None,
            actor_id=effect.actor_id,
            payload=effect.data,
        )

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, TypeVar

import pytest

from app.schemas.applications import InterviewPayload
from app.services.admission import AdmissionController
from app.services.errors import InvalidPayloadError, TransitionDeniedError
from app.services.repository import RepositoryUnavailableError
from app.services.side_effects import SideEffectDispatcher, drain_background_effects, format_interview_datetime
from app.services.status_graph import ActorRole, ApplicationStatus
from app.services.store import InMemoryRepository
from app.services.transitions import TransitionExecutor, TransitionRequest

T = TypeVar("T")

S = ApplicationStatus
EMPLOYER_ID = "00000000-0000-0000-0000-00000000e001"
STUDENT_ID = "00000000-0000-0000-0000-00000000s001"
ADMIN_ID = "00000000-0000-0000-0000-00000000a001"


def _run(coro: Awaitable[T]) -> T:
    async def _with_effects() -> T:
        try:
            return await coro
        finally:
            await drain_background_effects()

    return asyncio.run(_with_effects())


class GatedRepository(InMemoryRepository):
    """Holds every reader until ``readers`` callers have loaded the application."""

    def __init__(self, readers: int) -> None:
        super().__init__()
        self._readers = readers
        self._arrived = 0
        self._gate: asyncio.Event | None = None

    async def get_application(self, *, application_id: str) -> dict[str, Any]:
        row = await super().get_application(application_id=application_id)
        if self._gate is None:
            self._gate = asyncio.Event()
        self._arrived += 1
        if self._arrived >= self._readers:
            self._gate.set()
        await self._gate.wait()
        return row


class SlowRepository(InMemoryRepository):
    async def get_application(self, *, application_id: str) -> dict[str, Any]:
        await asyncio.sleep(1)
        return await super().get_application(application_id=application_id)


class FailingNotifications:
    async def enqueue_notification(self, *, user_id: str, template_kind: str, data: dict[str, Any]) -> None:
        raise RuntimeError("notification outbox unavailable")


class HangingNotifications:
    async def enqueue_notification(self, *, user_id: str, template_kind: str, data: dict[str, Any]) -> None:
        await asyncio.sleep(10)


def _executor(
    repository: InMemoryRepository,
    *,
    notifications: Any = None,
    persistence_timeout_seconds: float = 1.0,
    side_effect_timeout_seconds: float = 2.0,
    scheduler: Any = None,
) -> TransitionExecutor:
    dispatcher = SideEffectDispatcher(
        notifications=notifications or repository,
        audit=repository,
        timeout_seconds=side_effect_timeout_seconds,
        scheduler=scheduler,
    )
    return TransitionExecutor(
        repository=repository,
        dispatcher=dispatcher,
        persistence_timeout_seconds=persistence_timeout_seconds,
    )


async def _submit(repository: InMemoryRepository) -> dict[str, Any]:
    posting = repository.seed_posting(
        employer_id=EMPLOYER_ID,
        application_deadline=datetime.now(timezone.utc) + timedelta(days=14),
    )
    controller = AdmissionController(
        repository=repository,
        dispatcher=SideEffectDispatcher(notifications=repository, audit=repository),
        persistence_timeout_seconds=1.0,
    )
    return await controller.admit_application(
        student_id=STUDENT_ID,
        internship_id=posting["id"],
        cover_letter="Hello",
        resume_url=None,
        answers={},
    )


def _request(application_id: str, target: ApplicationStatus, role: ActorRole = ActorRole.EMPLOYER, **kwargs: Any) -> TransitionRequest:
    actor_id = {ActorRole.EMPLOYER: EMPLOYER_ID, ActorRole.STUDENT: STUDENT_ID, ActorRole.ADMIN: ADMIN_ID}[role]
    return TransitionRequest(
        application_id=application_id,
        target_status=target,
        actor_role=role,
        actor_id=actor_id,
        **kwargs,
    )


def _interview(days: float = 3, notes: str | None = "Bring your portfolio") -> InterviewPayload:
    return InterviewPayload(scheduled_at=datetime.now(timezone.utc) + timedelta(days=days), notes=notes)


async def _shortlisted(repository: InMemoryRepository, executor: TransitionExecutor) -> dict[str, Any]:
    application = await _submit(repository)
    await executor.execute(_request(application["id"], S.UNDER_REVIEW))
    return await executor.execute(_request(application["id"], S.SHORTLISTED))


def test_employer_moves_application_to_shortlisted() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    application = _run(_shortlisted(repository, executor))

    assert application["status"] == "shortlisted"
    assert application["version"] == 3
    history = repository.history[application["id"]]
    assert [(entry["from_status"], entry["to_status"]) for entry in history] == [
        (None, "submitted"),
        ("submitted", "under_review"),
        ("under_review", "shortlisted"),
    ]
    assert [(n["user_id"], n["template_kind"]) for n in repository.notifications] == [
        (EMPLOYER_ID, "new_application"),
        (STUDENT_ID, "application_status_changed"),
        (STUDENT_ID, "application_status_changed"),
    ]


def test_interview_in_the_past_is_rejected_without_changes() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> dict[str, Any]:
        application = await _shortlisted(repository, executor)
        with pytest.raises(InvalidPayloadError, match="future"):
            await executor.execute(_request(application["id"], S.INTERVIEW_SCHEDULED, interview=_interview(days=-1)))
        return await repository.get_application(application_id=application["id"])

    application = _run(_scenario())

    assert application["status"] == "shortlisted"
    assert application["version"] == 3
    assert application["interview"] is None
    assert len(repository.history[application["id"]]) == 3


def test_interview_without_payload_is_rejected() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> None:
        application = await _shortlisted(repository, executor)
        await executor.execute(_request(application["id"], S.INTERVIEW_SCHEDULED))

    with pytest.raises(InvalidPayloadError) as exc_info:
        _run(_scenario())

    assert exc_info.value.kind == "validation"


def test_interview_in_the_future_is_stored_and_notifies_student() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)
    interview = _interview(days=5)

    async def _scenario() -> dict[str, Any]:
        application = await _shortlisted(repository, executor)
        return await executor.execute(_request(application["id"], S.INTERVIEW_SCHEDULED, interview=interview))

    application = _run(_scenario())

    assert application["status"] == "interview_scheduled"
    assert application["interview"] == {"scheduled_at": interview.scheduled_at, "notes": "Bring your portfolio"}
    notification = repository.notifications[-1]
    assert notification["user_id"] == STUDENT_ID
    assert notification["template_kind"] == "interview_scheduled"
    assert notification["data"]["scheduled_at_display"] == format_interview_datetime(interview.scheduled_at)
    assert notification["data"]["notes"] == "Bring your portfolio"


def test_student_cannot_start_review() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> None:
        application = await _submit(repository)
        await executor.execute(_request(application["id"], S.UNDER_REVIEW, role=ActorRole.STUDENT))

    with pytest.raises(TransitionDeniedError) as exc_info:
        _run(_scenario())

    assert exc_info.value.reason == "role-not-permitted"
    assert exc_info.value.kind == "authorization"


def test_missing_edge_is_denied() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> None:
        application = await _submit(repository)
        await executor.execute(_request(application["id"], S.ACCEPTED))

    with pytest.raises(TransitionDeniedError) as exc_info:
        _run(_scenario())

    assert exc_info.value.reason == "no-such-edge"


def test_accepted_application_is_terminal() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> str:
        application = await _shortlisted(repository, executor)
        await executor.execute(_request(application["id"], S.INTERVIEW_SCHEDULED, interview=_interview()))
        await executor.execute(_request(application["id"], S.ACCEPTED))
        with pytest.raises(TransitionDeniedError) as exc_info:
            await executor.execute(_request(application["id"], S.REJECTED))
        assert exc_info.value.reason == "terminal"
        with pytest.raises(TransitionDeniedError) as retry_info:
            await executor.execute(_request(application["id"], S.ACCEPTED))
        assert retry_info.value.reason == "terminal"
        return application["id"]

    application_id = _run(_scenario())

    events = [event["event_type"] for event in repository.audit_events if event["entity_id"] == application_id]
    assert events.count("application_accepted") == 1


def test_retrying_a_transition_reports_stale_state() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> str:
        application = await _submit(repository)
        await executor.execute(_request(application["id"], S.UNDER_REVIEW))
        with pytest.raises(TransitionDeniedError) as exc_info:
            await executor.execute(_request(application["id"], S.UNDER_REVIEW))
        assert exc_info.value.reason == "stale-state"
        assert exc_info.value.kind == "conflict"
        return application["id"]

    application_id = _run(_scenario())

    assert len(repository.history[application_id]) == 2


def test_expected_status_mismatch_reports_stale_state() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> None:
        application = await _submit(repository)
        await executor.execute(_request(application["id"], S.UNDER_REVIEW))
        await executor.execute(_request(application["id"], S.REJECTED, expected_status=S.SUBMITTED))

    with pytest.raises(TransitionDeniedError) as exc_info:
        _run(_scenario())

    assert exc_info.value.reason == "stale-state"
    assert "under review" in exc_info.value.message


def test_concurrent_transitions_apply_exactly_once() -> None:
    repository = GatedRepository(readers=2)
    executor = _executor(repository)

    async def _scenario() -> tuple[str, list[Any]]:
        application = await _submit(repository)
        repository._arrived = 0
        repository._gate = None
        results = await asyncio.gather(
            executor.execute(_request(application["id"], S.WITHDRAWN, role=ActorRole.STUDENT)),
            executor.execute(_request(application["id"], S.UNDER_REVIEW)),
            return_exceptions=True,
        )
        return application["id"], results

    application_id, results = _run(_scenario())

    applied = [result for result in results if isinstance(result, dict)]
    denied = [result for result in results if isinstance(result, TransitionDeniedError)]
    assert len(applied) == 1
    assert len(denied) == 1
    assert denied[0].reason == "stale-state"
    assert applied[0]["version"] == 2
    assert len(repository.history[application_id]) == 2


def test_side_effect_failure_does_not_roll_back_transition() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository, notifications=FailingNotifications())

    async def _scenario() -> dict[str, Any]:
        application = await _submit(repository)
        return await executor.execute(_request(application["id"], S.UNDER_REVIEW))

    application = _run(_scenario())

    assert application["status"] == "under_review"
    assert repository.applications[application["id"]]["status"] == "under_review"
    assert [n["template_kind"] for n in repository.notifications] == ["new_application"]
    assert "status_changed" in [event["event_type"] for event in repository.audit_events]


def test_admin_override_records_moderation_event() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> dict[str, Any]:
        application = await _submit(repository)
        return await executor.execute(
            _request(application["id"], S.REJECTED, role=ActorRole.ADMIN, reason="Fraudulent posting")
        )

    application = _run(_scenario())

    assert application["status"] == "rejected"
    override = [event for event in repository.audit_events if event["event_type"] == "moderation_override"]
    assert len(override) == 1
    assert override[0]["actor_id"] == ADMIN_ID
    assert override[0]["payload"]["reason"] == "Fraudulent posting"
    assert repository.history[application["id"]][-1]["reason"] == "Fraudulent posting"


def test_student_withdrawal_notifies_employer() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> dict[str, Any]:
        application = await _submit(repository)
        return await executor.execute(_request(application["id"], S.WITHDRAWN, role=ActorRole.STUDENT))

    _run(_scenario())

    assert (repository.notifications[-1]["user_id"], repository.notifications[-1]["template_kind"]) == (
        EMPLOYER_ID,
        "application_status_changed",
    )


def test_slow_persistence_surfaces_as_unavailable() -> None:
    repository = SlowRepository()
    executor = _executor(repository, persistence_timeout_seconds=0.05)

    async def _scenario() -> None:
        application = await _submit(repository)
        await executor.execute(_request(application["id"], S.UNDER_REVIEW))

    with pytest.raises(RepositoryUnavailableError, match="timed out"):
        _run(_scenario())


def test_transition_returns_while_notification_sink_hangs() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository, notifications=HangingNotifications(), side_effect_timeout_seconds=5.0)

    async def _scenario() -> tuple[dict[str, Any], float]:
        application = await _submit(repository)
        started = time.perf_counter()
        updated = await executor.execute(_request(application["id"], S.UNDER_REVIEW))
        return updated, time.perf_counter() - started

    # Plain asyncio.run cancels the hanging dispatch instead of waiting it out.
    updated, elapsed = asyncio.run(_scenario())

    assert elapsed < 0.5
    assert updated["status"] == "under_review"
    assert repository.applications[updated["id"]]["status"] == "under_review"


def test_injected_scheduler_receives_dispatch_after_commit() -> None:
    repository = InMemoryRepository()
    scheduled: list[tuple[Any, Any]] = []
    executor = _executor(repository, scheduler=lambda func, arg: scheduled.append((func, arg)))

    async def _scenario() -> tuple[dict[str, Any], list[str], list[str]]:
        application = await _submit(repository)
        updated = await executor.execute(_request(application["id"], S.UNDER_REVIEW))
        before = [event["event_type"] for event in repository.audit_events]
        for func, arg in scheduled:
            await func(arg)
        after = [event["event_type"] for event in repository.audit_events]
        return updated, before, after

    updated, before, after = _run(_scenario())

    assert updated["status"] == "under_review"
    assert len(scheduled) == 1
    assert "status_changed" not in before
    assert after.count("status_changed") == 1


def test_leaving_interview_scheduled_clears_the_schedule() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> dict[str, Any]:
        application = await _shortlisted(repository, executor)
        scheduled = await executor.execute(_request(application["id"], S.INTERVIEW_SCHEDULED, interview=_interview()))
        assert scheduled["interview"] is not None
        return await executor.execute(_request(application["id"], S.REJECTED))

    application = _run(_scenario())

    assert application["status"] == "rejected"
    assert application["interview"] is None
    assert repository.applications[application["id"]]["interview"] is None
    sent = [n["template_kind"] for n in repository.notifications]
    assert "interview_scheduled" in sent


def test_student_cannot_shortlist_application_under_review() -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> None:
        application = await _submit(repository)
        await executor.execute(_request(application["id"], S.UNDER_REVIEW))
        await executor.execute(_request(application["id"], S.SHORTLISTED, role=ActorRole.STUDENT))

    with pytest.raises(TransitionDeniedError) as exc_info:
        _run(_scenario())

    assert exc_info.value.reason == "role-not-permitted"
    assert exc_info.value.kind == "authorization"


@pytest.mark.parametrize(
    ("terminal", "role"),
    [(S.REJECTED, ActorRole.EMPLOYER), (S.WITHDRAWN, ActorRole.STUDENT)],
)
def test_no_transition_leaves_rejected_or_withdrawn(terminal: ApplicationStatus, role: ActorRole) -> None:
    repository = InMemoryRepository()
    executor = _executor(repository)

    async def _scenario() -> tuple[dict[str, Any], list[str]]:
        application = await _submit(repository)
        if role == ActorRole.EMPLOYER:
            await executor.execute(_request(application["id"], S.UNDER_REVIEW))
        closed = await executor.execute(_request(application["id"], terminal, role=role))
        reasons = []
        for target in ApplicationStatus:
            for actor in ActorRole:
                with pytest.raises(TransitionDeniedError) as exc_info:
                    await executor.execute(
                        _request(application["id"], target, role=actor, interview=_interview(), reason="retry")
                    )
                reasons.append(exc_info.value.reason)
        return closed, reasons

    closed, reasons = _run(_scenario())

    assert closed["status"] == terminal.value
    assert set(reasons) == {"terminal"}
    assert len(reasons) == len(ApplicationStatus) * len(ActorRole)
    stored = repository.applications[closed["id"]]
    assert stored["status"] == terminal.value
    assert stored["version"] == closed["version"]

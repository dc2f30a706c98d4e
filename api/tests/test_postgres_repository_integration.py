from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

import asyncpg
import pytest

from app.core.auth import Principal
from app.core.security import ROLE_SCOPES
from app.schemas.applications import InterviewPayload
from app.services.errors import DuplicateApplicationError, TransitionDeniedError, VerificationRequiredError
from app.services.lifecycle import ApplicationLifecycleService
from app.services.repository import PostgresRepository
from app.services.side_effects import drain_background_effects
from app.services.status_graph import DEFAULT_STATUS_GRAPH, ActorRole, ApplicationStatus

T = TypeVar("T")

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "db" / "schema.sql"
TABLES = (
    "audit_events",
    "notifications",
    "application_status_history",
    "applications",
    "postings",
    "employer_kyc",
)


def _run(coro: Awaitable[T]) -> T:
    return asyncio.run(coro)


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("IH_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require IH_DATABASE_URL")
    return url


@pytest.fixture(scope="session", autouse=True)
def apply_schema(database_url: str) -> None:
    async def _apply() -> None:
        conn = await asyncpg.connect(database_url)
        try:
            await conn.execute(SCHEMA_PATH.read_text())
        finally:
            await conn.close()

    _run(_apply())


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    async def _truncate() -> None:
        conn = await asyncpg.connect(database_url)
        try:
            await conn.execute(f"truncate {', '.join(TABLES)} restart identity cascade")
        finally:
            await conn.close()

    _run(_truncate())


def _principal(role: ActorRole, actor_id: str) -> Principal:
    return Principal(subject=actor_id, role=role, scopes=set(ROLE_SCOPES[role]), actor_id=actor_id)


def _with_service(
    database_url: str,
    scenario: Callable[[ApplicationLifecycleService, PostgresRepository], Awaitable[T]],
) -> T:
    async def _wrapped() -> T:
        repository = PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=4)
        service = ApplicationLifecycleService(repository=repository, graph=DEFAULT_STATUS_GRAPH)
        try:
            return await scenario(service, repository)
        finally:
            await drain_background_effects()
            await repository.close()

    return _run(_wrapped())


async def _published_posting(
    service: ApplicationLifecycleService,
    employer: Principal,
    admin: Principal,
) -> dict[str, Any]:
    posting = await service.create_posting(
        employer,
        title="Platform Intern",
        description="Build internal tools.",
        application_deadline=datetime.now(timezone.utc) + timedelta(days=21),
    )
    with pytest.raises(VerificationRequiredError):
        await service.publish_posting(employer, posting_id=posting["id"])
    await service.set_kyc_status(admin, employer_id=employer.actor_id, status="approved", reason=None)
    return await service.publish_posting(employer, posting_id=posting["id"])


def test_application_lifecycle_round_trip(database_url: str) -> None:
    employer = _principal(ActorRole.EMPLOYER, str(uuid4()))
    student = _principal(ActorRole.STUDENT, str(uuid4()))
    admin = _principal(ActorRole.ADMIN, str(uuid4()))

    async def _scenario(service: ApplicationLifecycleService, repository: PostgresRepository) -> dict[str, Any]:
        posting = await _published_posting(service, employer, admin)
        application = await service.create_application(
            student,
            internship_id=posting["id"],
            cover_letter="Hi",
            answers={"portfolio": "https://example.edu/me"},
        )
        with pytest.raises(DuplicateApplicationError):
            await service.create_application(student, internship_id=posting["id"], cover_letter=None)

        for target in (ApplicationStatus.UNDER_REVIEW, ApplicationStatus.SHORTLISTED):
            await service.transition_application(employer, application_id=application["id"], target_status=target)
        scheduled_at = datetime.now(timezone.utc) + timedelta(days=4)
        updated = await service.transition_application(
            employer,
            application_id=application["id"],
            target_status=ApplicationStatus.INTERVIEW_SCHEDULED,
            interview=InterviewPayload(scheduled_at=scheduled_at, notes="Video call"),
        )
        accepted = await service.transition_application(
            employer,
            application_id=application["id"],
            target_status=ApplicationStatus.ACCEPTED,
        )
        history = await service.list_application_history(student, application_id=application["id"], limit=10, offset=0)
        return {
            "application": application,
            "updated": updated,
            "accepted": accepted,
            "history": history,
            "scheduled_at": scheduled_at,
        }

    result = _with_service(database_url, _scenario)

    assert result["application"]["answers"] == {"portfolio": "https://example.edu/me"}
    assert result["updated"]["status"] == "interview_scheduled"
    assert result["updated"]["version"] == 4
    assert result["updated"]["interview"]["notes"] == "Video call"
    assert result["updated"]["interview"]["scheduled_at"] == result["scheduled_at"]
    assert [entry["to_status"] for entry in result["history"]] == [
        "submitted",
        "under_review",
        "shortlisted",
        "interview_scheduled",
        "accepted",
    ]
    assert result["accepted"]["interview"] is None


def test_concurrent_transitions_compare_and_swap(database_url: str) -> None:
    employer = _principal(ActorRole.EMPLOYER, str(uuid4()))
    student = _principal(ActorRole.STUDENT, str(uuid4()))
    admin = _principal(ActorRole.ADMIN, str(uuid4()))

    async def _scenario(service: ApplicationLifecycleService, repository: PostgresRepository) -> list[Any]:
        posting = await _published_posting(service, employer, admin)
        application = await service.create_application(student, internship_id=posting["id"], cover_letter=None)
        return await asyncio.gather(
            *(
                service.transition_application(
                    employer,
                    application_id=application["id"],
                    target_status=ApplicationStatus.UNDER_REVIEW,
                )
                for _ in range(5)
            ),
            return_exceptions=True,
        )

    results = _with_service(database_url, _scenario)

    applied = [result for result in results if isinstance(result, dict)]
    denied = [result for result in results if isinstance(result, TransitionDeniedError)]
    assert len(applied) == 1
    assert len(denied) == 4
    assert all(error.reason == "stale-state" for error in denied)


def test_side_effects_are_written_to_outbox_tables(database_url: str) -> None:
    employer = _principal(ActorRole.EMPLOYER, str(uuid4()))
    student = _principal(ActorRole.STUDENT, str(uuid4()))
    admin = _principal(ActorRole.ADMIN, str(uuid4()))

    async def _scenario(service: ApplicationLifecycleService, repository: PostgresRepository) -> tuple[list[Any], list[Any]]:
        posting = await _published_posting(service, employer, admin)
        application = await service.create_application(student, internship_id=posting["id"], cover_letter=None)
        await service.transition_application(
            admin,
            application_id=application["id"],
            target_status=ApplicationStatus.REJECTED,
            reason="Spam",
        )
        await drain_background_effects()
        conn = await asyncpg.connect(database_url)
        try:
            notifications = await conn.fetch("select user_id::text, template_kind from notifications order by id")
            events = await conn.fetch(
                "select event_type from audit_events where entity_type = 'application' order by id"
            )
        finally:
            await conn.close()
        return notifications, events

    notifications, events = _with_service(database_url, _scenario)

    assert [(row["user_id"], row["template_kind"]) for row in notifications] == [
        (employer.actor_id, "new_application"),
        (student.actor_id, "application_status_changed"),
    ]
    assert [row["event_type"] for row in events] == [
        "application_submitted",
        "status_changed",
        "moderation_override",
    ]

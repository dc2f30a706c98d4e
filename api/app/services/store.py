from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from app.services.errors import DuplicateApplicationError
from app.services.repository import (
    KYC_STATUSES,
    ApplicationAdmissionCheck,
    PublishCheck,
    RepositoryNotFoundError,
    RepositoryValidationError,
)


class InMemoryRepository:
    """Process-local repository with the same contract as ``PostgresRepository``.

    Every write runs under a single ``asyncio.Lock`` so the status
    compare-and-swap and the (student, internship) uniqueness rule hold for
    concurrent coroutines the same way row locks and the unique index do in
    Postgres. Used for local development (``IH_REPOSITORY_BACKEND=memory``)
    and by the test-suite.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.applications: dict[str, dict[str, Any]] = {}
        self.history: dict[str, list[dict[str, Any]]] = {}
        self.postings: dict[str, dict[str, Any]] = {}
        self.kyc: dict[str, dict[str, Any]] = {}
        self.notifications: list[dict[str, Any]] = []
        self.audit_events: list[dict[str, Any]] = []
        self._application_keys: set[tuple[str, str]] = set()

    async def close(self) -> None:
        return None

    def seed_posting(
        self,
        *,
        employer_id: str,
        application_deadline: datetime,
        status: str = "published",
        title: str = "Software Engineering Intern",
        description: str | None = None,
        posting_id: str | None = None,
    ) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        posting = {
            "id": posting_id or str(uuid4()),
            "employer_id": employer_id,
            "title": title,
            "description": description,
            "status": status,
            "application_deadline": application_deadline,
            "published_at": now if status == "published" else None,
            "created_at": now,
            "updated_at": now,
        }
        self.postings[posting["id"]] = posting
        return copy.deepcopy(posting)

    async def get_application(self, *, application_id: str) -> dict[str, Any]:
        application = self.applications.get(application_id)
        if application is None:
            raise RepositoryNotFoundError("application not found")
        return self._application_to_dict(application)

    async def list_applications(
        self,
        *,
        limit: int,
        offset: int,
        student_id: str | None = None,
        employer_id: str | None = None,
        internship_id: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        rows = [
            self._application_to_dict(application)
            for application in self.applications.values()
            if (student_id is None or application["student_id"] == student_id)
            and (employer_id is None or self.postings[application["internship_id"]]["employer_id"] == employer_id)
            and (internship_id is None or application["internship_id"] == internship_id)
            and (status is None or application["status"] == status)
        ]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows[offset : offset + limit]

    async def list_application_history(self, *, application_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = self.history.get(application_id, [])
        return copy.deepcopy(rows[offset : offset + limit])

    async def create_application(
        self,
        *,
        student_id: str,
        internship_id: str,
        cover_letter: str | None,
        resume_url: str | None,
        answers: dict[str, Any],
        admit: ApplicationAdmissionCheck,
    ) -> dict[str, Any]:
        async with self._lock:
            posting = self.postings.get(internship_id)
            if posting is None:
                raise RepositoryNotFoundError("internship not found")

            key = (student_id, internship_id)
            admit(copy.deepcopy(posting), key in self._application_keys)
            if key in self._application_keys:
                raise DuplicateApplicationError("student has already applied to this internship")

            now = datetime.now(timezone.utc)
            application_id = str(uuid4())
            self.applications[application_id] = {
                "id": application_id,
                "student_id": student_id,
                "internship_id": internship_id,
                "status": "submitted",
                "version": 1,
                "cover_letter": cover_letter,
                "resume_url": resume_url,
                "answers": copy.deepcopy(answers),
                "interview": None,
                "created_at": now,
                "updated_at": now,
            }
            self._application_keys.add(key)
            self.history[application_id] = [
                {
                    "at": now,
                    "from_status": None,
                    "to_status": "submitted",
                    "actor_role": "student",
                    "actor_id": student_id,
                    "reason": None,
                }
            ]
            return self._application_to_dict(self.applications[application_id])

    async def apply_transition(
        self,
        *,
        application_id: str,
        expected_status: str,
        expected_version: int,
        to_status: str,
        actor_role: str,
        actor_id: str | None,
        interview: dict[str, Any] | None,
        reason: str | None,
    ) -> dict[str, Any] | None:
        async with self._lock:
            application = self.applications.get(application_id)
            if application is None:
                raise RepositoryNotFoundError("application not found")
            if application["status"] != expected_status or application["version"] != expected_version:
                return None

            now = datetime.now(timezone.utc)
            application["status"] = to_status
            application["version"] += 1
            application["updated_at"] = now
            # The schedule only lives on the record while the interview is pending.
            application["interview"] = copy.deepcopy(interview)
            self.history[application_id].append(
                {
                    "at": now,
                    "from_status": expected_status,
                    "to_status": to_status,
                    "actor_role": actor_role,
                    "actor_id": actor_id,
                    "reason": reason,
                }
            )
            return self._application_to_dict(application)

    async def get_posting(self, *, posting_id: str) -> dict[str, Any]:
        posting = self.postings.get(posting_id)
        if posting is None:
            raise RepositoryNotFoundError("internship not found")
        return copy.deepcopy(posting)

    async def create_posting(
        self,
        *,
        employer_id: str,
        title: str,
        description: str | None,
        application_deadline: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            posting = self.seed_posting(
                employer_id=employer_id,
                application_deadline=application_deadline,
                status="draft",
                title=title,
                description=description,
            )
            self._record("posting", posting["id"], "created", "employer", employer_id, {"title": title})
            return posting

    async def publish_posting(self, *, posting_id: str, employer_id: str, check: PublishCheck) -> dict[str, Any]:
        async with self._lock:
            posting = self.postings.get(posting_id)
            if posting is None or posting["employer_id"] != employer_id:
                raise RepositoryNotFoundError("internship not found")

            kyc_status = self.kyc.get(employer_id, {}).get("status", "pending")
            check(copy.deepcopy(posting), kyc_status)
            if posting["status"] == "published":
                return copy.deepcopy(posting)

            from_status = posting["status"]
            now = datetime.now(timezone.utc)
            posting["status"] = "published"
            posting["published_at"] = posting["published_at"] or now
            posting["updated_at"] = now
            self._record(
                "posting",
                posting_id,
                "status_changed",
                "employer",
                employer_id,
                {"from_status": from_status, "to_status": "published"},
            )
            return copy.deepcopy(posting)

    async def close_posting(
        self,
        *,
        posting_id: str,
        employer_id: str,
        check: Callable[[dict[str, Any]], None],
    ) -> dict[str, Any]:
        async with self._lock:
            posting = self.postings.get(posting_id)
            if posting is None or posting["employer_id"] != employer_id:
                raise RepositoryNotFoundError("internship not found")

            check(copy.deepcopy(posting))
            if posting["status"] == "closed":
                return copy.deepcopy(posting)

            from_status = posting["status"]
            posting["status"] = "closed"
            posting["updated_at"] = datetime.now(timezone.utc)
            self._record(
                "posting",
                posting_id,
                "status_changed",
                "employer",
                employer_id,
                {"from_status": from_status, "to_status": "closed"},
            )
            return copy.deepcopy(posting)

    async def list_kyc(self, *, status: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        if status is not None and status not in KYC_STATUSES:
            raise RepositoryValidationError(f"invalid kyc status: {status}")
        wanted = {"pending", "under_review"} if status == "pending" else {status}
        rows = [
            copy.deepcopy(record)
            for record in self.kyc.values()
            if status is None or record["status"] in wanted
        ]
        rows.sort(key=lambda row: row["updated_at"])
        return rows[offset : offset + limit]

    async def set_kyc_status(
        self,
        *,
        employer_id: str,
        status: str,
        actor_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        if status not in KYC_STATUSES:
            raise RepositoryValidationError(f"invalid kyc status: {status}")
        async with self._lock:
            previous = self.kyc.get(employer_id, {}).get("status", "pending")
            record = {
                "employer_id": employer_id,
                "status": status,
                "reason": reason,
                "updated_at": datetime.now(timezone.utc),
            }
            self.kyc[employer_id] = record
            self._record(
                "employer_kyc",
                employer_id,
                "kyc_status_changed",
                "admin",
                actor_id,
                {"from_status": previous, "to_status": status, "reason": reason},
            )
            return copy.deepcopy(record)

    async def enqueue_notification(self, *, user_id: str, template_kind: str, data: dict[str, Any]) -> None:
        self.notifications.append(
            {
                "id": len(self.notifications) + 1,
                "user_id": user_id,
                "template_kind": template_kind,
                "data": copy.deepcopy(data),
                "created_at": datetime.now(timezone.utc),
            }
        )

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
        self._record(entity_type, entity_id, event_type, actor_role, actor_id, payload)

    def _record(
        self,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor_role: str | None,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        self.audit_events.append(
            {
                "id": len(self.audit_events) + 1,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "event_type": event_type,
                "actor_role": actor_role,
                "actor_id": actor_id,
                "payload": copy.deepcopy(payload),
                "created_at": datetime.now(timezone.utc),
            }
        )

    def _application_to_dict(self, application: dict[str, Any]) -> dict[str, Any]:
        row = copy.deepcopy(application)
        row["employer_id"] = self.postings[application["internship_id"]]["employer_id"]
        return row

"""Admission control for applications and posting publication.

The checks here are plain functions over already-loaded rows. The
repository calls them inside the same transaction as the write they
guard, so a posting cannot change status between check and insert.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from app.services.errors import (
    DeadlinePassedError,
    DuplicateApplicationError,
    PostingNotOpenError,
    VerificationRequiredError,
)
from app.services.repository import with_persistence_timeout
from app.services.side_effects import SideEffectDispatcher

logger = logging.getLogger(__name__)

APPROVED_KYC_STATUS = "approved"


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_application_admission(*, posting: dict[str, Any], already_applied: bool, now: datetime) -> None:
    if already_applied:
        raise DuplicateApplicationError("student has already applied to this internship")
    if posting["status"] != "published":
        raise PostingNotOpenError("internship is not accepting applications")
    if now >= _as_aware(posting["application_deadline"]):
        raise DeadlinePassedError("application deadline has passed")


def check_publish(*, posting: dict[str, Any], kyc_status: str, now: datetime) -> None:
    if kyc_status != APPROVED_KYC_STATUS:
        raise VerificationRequiredError(
            f"employer verification must be approved before publishing; current status is {kyc_status}"
        )
    if posting["status"] == "closed":
        raise PostingNotOpenError("closed internships cannot be published again")
    if posting["status"] == "draft" and now >= _as_aware(posting["application_deadline"]):
        raise DeadlinePassedError("application deadline must be in the future to publish")


def check_close(*, posting: dict[str, Any]) -> None:
    if posting["status"] == "draft":
        raise PostingNotOpenError("only published internships can be closed")


class AdmissionController:
    def __init__(
        self,
        *,
        repository: Any,
        dispatcher: SideEffectDispatcher,
        persistence_timeout_seconds: float,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.persistence_timeout_seconds = persistence_timeout_seconds

    async def admit_application(
        self,
        *,
        student_id: str,
        internship_id: str,
        cover_letter: str | None,
        resume_url: str | None,
        answers: dict[str, Any],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        checked_at = now or datetime.now(timezone.utc)

        def admit(posting: dict[str, Any], already_applied: bool) -> None:
            check_application_admission(posting=posting, already_applied=already_applied, now=checked_at)

        application = await with_persistence_timeout(
            self.repository.create_application(
                student_id=student_id,
                internship_id=internship_id,
                cover_letter=cover_letter,
                resume_url=resume_url,
                answers=answers,
                admit=admit,
            ),
            timeout_seconds=self.persistence_timeout_seconds,
        )
        logger.info(
            "application admitted application_id=%s internship_id=%s student_id=%s",
            application["id"],
            internship_id,
            student_id,
        )
        self.dispatcher.schedule_submission(application)
        return application

    async def publish_posting(self, *, posting_id: str, employer_id: str, now: datetime | None = None) -> dict[str, Any]:
        checked_at = now or datetime.now(timezone.utc)

        def check(posting: dict[str, Any], kyc_status: str) -> None:
            check_publish(posting=posting, kyc_status=kyc_status, now=checked_at)

        posting = await with_persistence_timeout(
            self.repository.publish_posting(posting_id=posting_id, employer_id=employer_id, check=check),
            timeout_seconds=self.persistence_timeout_seconds,
        )
        logger.info("posting published posting_id=%s employer_id=%s", posting_id, employer_id)
        return posting

    async def close_posting(self, *, posting_id: str, employer_id: str) -> dict[str, Any]:
        def check(posting: dict[str, Any]) -> None:
            check_close(posting=posting)

        posting = await with_persistence_timeout(
            self.repository.close_posting(posting_id=posting_id, employer_id=employer_id, check=check),
            timeout_seconds=self.persistence_timeout_seconds,
        )
        logger.info("posting closed posting_id=%s employer_id=%s", posting_id, employer_id)
        return posting

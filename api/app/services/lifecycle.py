from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from fastapi import BackgroundTasks, Depends

from app.core.auth import Principal
from app.core.config import Settings, get_settings
from app.schemas.applications import InterviewPayload
from app.services.actions import Action, list_actions
from app.services.admission import AdmissionController
from app.services.errors import ActorNotPermittedError, DeadlinePassedError
from app.services.repository import RepositoryNotFoundError, get_repository, with_persistence_timeout
from app.services.side_effects import EffectScheduler, SideEffectDispatcher
from app.services.status_graph import ActorRole, ApplicationStatus, StatusGraph, build_status_graph
from app.services.transitions import TransitionExecutor, TransitionRequest


@lru_cache
def status_graph_for(admin_override_targets: tuple[str, ...]) -> StatusGraph:
    return build_status_graph(admin_override_targets)


class ApplicationLifecycleService:
    """Entry point used by the HTTP layer for every lifecycle operation.

    Ownership is enforced here: students see their own applications,
    employers see applications to their own postings, admins see all.
    Anything else is reported as not found.
    """

    def __init__(
        self,
        *,
        repository: Any,
        graph: StatusGraph,
        persistence_timeout_seconds: float = 5.0,
        side_effect_timeout_seconds: float = 2.0,
        notify_on_status_change: bool = True,
        scheduler: EffectScheduler | None = None,
    ) -> None:
        self.repository = repository
        self.graph = graph
        self.persistence_timeout_seconds = persistence_timeout_seconds
        dispatcher = SideEffectDispatcher(
            notifications=repository,
            audit=repository,
            timeout_seconds=side_effect_timeout_seconds,
            notify_on_status_change=notify_on_status_change,
            scheduler=scheduler,
        )
        self.dispatcher = dispatcher
        self.admission = AdmissionController(
            repository=repository,
            dispatcher=dispatcher,
            persistence_timeout_seconds=persistence_timeout_seconds,
        )
        self.executor = TransitionExecutor(
            repository=repository,
            dispatcher=dispatcher,
            persistence_timeout_seconds=persistence_timeout_seconds,
            graph=graph,
        )

    @classmethod
    def from_settings(
        cls,
        *,
        repository: Any,
        settings: Settings,
        scheduler: EffectScheduler | None = None,
    ) -> ApplicationLifecycleService:
        return cls(
            repository=repository,
            graph=status_graph_for(tuple(settings.admin_override_targets)),
            persistence_timeout_seconds=settings.persistence_timeout_seconds,
            side_effect_timeout_seconds=settings.side_effect_timeout_seconds,
            notify_on_status_change=settings.notify_on_status_change,
            scheduler=scheduler,
        )

    async def create_application(
        self,
        principal: Principal,
        *,
        internship_id: str,
        cover_letter: str | None,
        resume_url: str | None = None,
        answers: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        actor_id = self._require_role(principal, ActorRole.STUDENT)
        return await self.admission.admit_application(
            student_id=actor_id,
            internship_id=internship_id,
            cover_letter=cover_letter,
            resume_url=resume_url,
            answers=answers or {},
        )

    async def get_application(self, principal: Principal, *, application_id: str) -> dict[str, Any]:
        application = await with_persistence_timeout(
            self.repository.get_application(application_id=application_id),
            timeout_seconds=self.persistence_timeout_seconds,
        )
        if not self._can_access(principal, application):
            raise RepositoryNotFoundError("application not found")
        return application

    async def list_applications(
        self,
        principal: Principal,
        *,
        limit: int,
        offset: int,
        internship_id: str | None = None,
        status: ApplicationStatus | None = None,
    ) -> list[dict[str, Any]]:
        filters: dict[str, Any] = {
            "internship_id": internship_id,
            "status": status.value if status else None,
        }
        if principal.role == ActorRole.STUDENT:
            filters["student_id"] = principal.actor_id
        elif principal.role == ActorRole.EMPLOYER:
            filters["employer_id"] = principal.actor_id
        return await with_persistence_timeout(
            self.repository.list_applications(limit=limit, offset=offset, **filters),
            timeout_seconds=self.persistence_timeout_seconds,
        )

    async def list_application_history(
        self,
        principal: Principal,
        *,
        application_id: str,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        await self.get_application(principal, application_id=application_id)
        return await with_persistence_timeout(
            self.repository.list_application_history(application_id=application_id, limit=limit, offset=offset),
            timeout_seconds=self.persistence_timeout_seconds,
        )

    async def list_allowed_actions(self, principal: Principal, *, application_id: str) -> list[Action]:
        application = await self.get_application(principal, application_id=application_id)
        return list_actions(ApplicationStatus(application["status"]), principal.role, self.graph)

    async def transition_application(
        self,
        principal: Principal,
        *,
        application_id: str,
        target_status: ApplicationStatus,
        interview: InterviewPayload | None = None,
        expected_status: ApplicationStatus | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        await self.get_application(principal, application_id=application_id)
        return await self.executor.execute(
            TransitionRequest(
                application_id=application_id,
                target_status=target_status,
                actor_role=principal.role,
                actor_id=principal.actor_id,
                expected_status=expected_status,
                interview=interview,
                reason=reason,
            )
        )

    async def get_posting(self, *, posting_id: str) -> dict[str, Any]:
        return await with_persistence_timeout(
            self.repository.get_posting(posting_id=posting_id),
            timeout_seconds=self.persistence_timeout_seconds,
        )

    async def create_posting(
        self,
        principal: Principal,
        *,
        title: str,
        description: str | None,
        application_deadline: datetime,
    ) -> dict[str, Any]:
        actor_id = self._require_role(principal, ActorRole.EMPLOYER)
        if application_deadline.tzinfo is None:
            application_deadline = application_deadline.replace(tzinfo=timezone.utc)
        if application_deadline <= datetime.now(timezone.utc):
            raise DeadlinePassedError("application deadline must be in the future")
        return await with_persistence_timeout(
            self.repository.create_posting(
                employer_id=actor_id,
                title=title,
                description=description,
                application_deadline=application_deadline,
            ),
            timeout_seconds=self.persistence_timeout_seconds,
        )

    async def publish_posting(self, principal: Principal, *, posting_id: str) -> dict[str, Any]:
        actor_id = self._require_role(principal, ActorRole.EMPLOYER)
        return await self.admission.publish_posting(posting_id=posting_id, employer_id=actor_id)

    async def close_posting(self, principal: Principal, *, posting_id: str) -> dict[str, Any]:
        actor_id = self._require_role(principal, ActorRole.EMPLOYER)
        return await self.admission.close_posting(posting_id=posting_id, employer_id=actor_id)

    async def list_kyc_queue(
        self,
        principal: Principal,
        *,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        self._require_role(principal, ActorRole.ADMIN)
        return await with_persistence_timeout(
            self.repository.list_kyc(status=status, limit=limit, offset=offset),
            timeout_seconds=self.persistence_timeout_seconds,
        )

    async def set_kyc_status(
        self,
        principal: Principal,
        *,
        employer_id: str,
        status: str,
        reason: str | None,
    ) -> dict[str, Any]:
        actor_id = self._require_role(principal, ActorRole.ADMIN)
        return await with_persistence_timeout(
            self.repository.set_kyc_status(employer_id=employer_id, status=status, actor_id=actor_id, reason=reason),
            timeout_seconds=self.persistence_timeout_seconds,
        )

    @staticmethod
    def _require_role(principal: Principal, role: ActorRole) -> str:
        if principal.role != role:
            raise ActorNotPermittedError(f"only a {role.value} can perform this operation")
        if not principal.actor_id:
            raise ActorNotPermittedError("principal has no actor id")
        return principal.actor_id

    @staticmethod
    def _can_access(principal: Principal, application: dict[str, Any]) -> bool:
        if principal.role == ActorRole.ADMIN:
            return True
        if principal.role == ActorRole.STUDENT:
            return application["student_id"] == principal.actor_id
        return application["employer_id"] == principal.actor_id


def get_lifecycle_service(
    background_tasks: BackgroundTasks,
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> ApplicationLifecycleService:
    # Side effects run after the response has been sent.
    return ApplicationLifecycleService.from_settings(
        repository=repository,
        settings=settings,
        scheduler=background_tasks.add_task,
    )

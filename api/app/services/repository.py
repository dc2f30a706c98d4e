from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from app.core.config import get_settings
from app.services.errors import DuplicateApplicationError

if TYPE_CHECKING:
    from app.services.store import InMemoryRepository

T = TypeVar("T")

ApplicationAdmissionCheck = Callable[[dict[str, Any], bool], None]
PublishCheck = Callable[[dict[str, Any], str], None]

KYC_STATUSES = {"pending", "under_review", "approved", "rejected"}


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable, not configured or too slow to answer."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation conflicts with the current persisted state."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


async def with_persistence_timeout(operation: Awaitable[T], *, timeout_seconds: float) -> T:
    try:
        return await asyncio.wait_for(operation, timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise RepositoryUnavailableError(f"persistence timed out after {timeout_seconds:.1f}s") from exc


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_application(self, *, application_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await self._fetch_application_row(conn=pool, application_id=application_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("application not found") from exc
        if not row:
            raise RepositoryNotFoundError("application not found")
        return self._application_row_to_dict(row)

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
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  a.id::text as id,
                  a.student_id::text as student_id,
                  a.internship_id::text as internship_id,
                  p.employer_id::text as employer_id,
                  a.status::text as status,
                  a.version,
                  a.cover_letter,
                  a.resume_url,
                  a.answers,
                  a.interview_at,
                  a.interview_notes,
                  a.created_at,
                  a.updated_at
                from applications a
                join postings p on p.id = a.internship_id
                where ($3::uuid is null or a.student_id = $3::uuid)
                  and ($4::uuid is null or p.employer_id = $4::uuid)
                  and ($5::uuid is null or a.internship_id = $5::uuid)
                  and ($6::text is null or a.status::text = $6::text)
                order by a.created_at desc
                limit $1
                offset $2
                """,
                limit,
                offset,
                student_id,
                employer_id,
                internship_id,
                status,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid application filter") from exc
        return [self._application_row_to_dict(row) for row in rows]

    async def list_application_history(self, *, application_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  created_at as at,
                  from_status::text as from_status,
                  to_status::text as to_status,
                  actor_role::text as actor_role,
                  actor_id::text as actor_id,
                  reason
                from application_status_history
                where application_id = $1::uuid
                order by id asc
                limit $2
                offset $3
                """,
                application_id,
                limit,
                offset,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("application not found") from exc
        return [dict(row) for row in rows]

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
        try:
            async with self._transaction() as conn:
                # Share lock keeps the posting from being closed while the
                # admission check runs against it.
                posting_row = await conn.fetchrow(
                    """
                    select
                      id::text as id,
                      employer_id::text as employer_id,
                      title,
                      description,
                      status::text as status,
                      application_deadline,
                      published_at,
                      created_at,
                      updated_at
                    from postings
                    where id = $1::uuid
                    for share
                    """,
                    internship_id,
                )
                if not posting_row:
                    raise RepositoryNotFoundError("internship not found")

                already_applied = await conn.fetchval(
                    """
                    select 1
                    from applications
                    where student_id = $1::uuid
                      and internship_id = $2::uuid
                    limit 1
                    """,
                    student_id,
                    internship_id,
                )
                admit(dict(posting_row), bool(already_applied))

                application_id = await conn.fetchval(
                    """
                    insert into applications (
                      student_id,
                      internship_id,
                      status,
                      version,
                      cover_letter,
                      resume_url,
                      answers
                    )
                    values ($1::uuid, $2::uuid, 'submitted', 1, $3, $4, $5::jsonb)
                    returning id::text
                    """,
                    student_id,
                    internship_id,
                    cover_letter,
                    resume_url,
                    json.dumps(answers),
                )
                await conn.execute(
                    """
                    insert into application_status_history (
                      application_id,
                      from_status,
                      to_status,
                      actor_role,
                      actor_id
                    )
                    values ($1::uuid, null, 'submitted', 'student', $2::uuid)
                    """,
                    application_id,
                    student_id,
                )
                row = await self._fetch_application_row(conn=conn, application_id=application_id)
                if not row:
                    raise RepositoryNotFoundError("application not found")
                return self._application_row_to_dict(row)
        except pg_exc.UniqueViolationError as exc:
            raise DuplicateApplicationError("student has already applied to this internship") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("internship not found") from exc

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
        """Compare-and-swap the application status.

        Returns ``None`` when the row no longer matches ``expected_status``
        and ``expected_version``, meaning a concurrent writer got there first.
        The interview columns are overwritten on every transition, so they
        are cleared once the application leaves ``interview_scheduled``.
        """
        interview_at = interview["scheduled_at"] if interview else None
        interview_notes = interview.get("notes") if interview else None
        try:
            async with self._transaction() as conn:
                swapped = await conn.fetchval(
                    """
                    update applications
                    set
                      status = $4::application_status,
                      version = version + 1,
                      interview_at = $5::timestamptz,
                      interview_notes = $6,
                      updated_at = now()
                    where id = $1::uuid
                      and status = $2::application_status
                      and version = $3
                    returning id::text
                    """,
                    application_id,
                    expected_status,
                    expected_version,
                    to_status,
                    interview_at,
                    interview_notes,
                )
                if swapped is None:
                    return None

                await conn.execute(
                    """
                    insert into application_status_history (
                      application_id,
                      from_status,
                      to_status,
                      actor_role,
                      actor_id,
                      reason
                    )
                    values ($1::uuid, $2::application_status, $3::application_status, $4::actor_role, $5::uuid, $6)
                    """,
                    application_id,
                    expected_status,
                    to_status,
                    actor_role,
                    actor_id,
                    reason,
                )
                row = await self._fetch_application_row(conn=conn, application_id=application_id)
                if not row:
                    raise RepositoryNotFoundError("application not found")
                return self._application_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid application status or id") from exc

    async def get_posting(self, *, posting_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await self._fetch_posting_row(conn=pool, posting_id=posting_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("internship not found") from exc
        if not row:
            raise RepositoryNotFoundError("internship not found")
        return dict(row)

    async def create_posting(
        self,
        *,
        employer_id: str,
        title: str,
        description: str | None,
        application_deadline: datetime,
    ) -> dict[str, Any]:
        async with self._transaction() as conn:
            posting_id = await conn.fetchval(
                """
                insert into postings (employer_id, title, description, status, application_deadline)
                values ($1::uuid, $2, $3, 'draft', $4::timestamptz)
                returning id::text
                """,
                employer_id,
                title,
                description,
                application_deadline,
            )
            await self._insert_audit_event(
                conn=conn,
                entity_type="posting",
                entity_id=posting_id,
                event_type="created",
                actor_role="employer",
                actor_id=employer_id,
                payload={"title": title},
            )
            row = await self._fetch_posting_row(conn=conn, posting_id=posting_id)
            if not row:
                raise RepositoryNotFoundError("internship not found")
            return dict(row)

    async def publish_posting(self, *, posting_id: str, employer_id: str, check: PublishCheck) -> dict[str, Any]:
        try:
            async with self._transaction() as conn:
                posting_row = await self._fetch_posting_row(conn=conn, posting_id=posting_id, for_update=True)
                if not posting_row or posting_row["employer_id"] != employer_id:
                    raise RepositoryNotFoundError("internship not found")

                kyc_status = await conn.fetchval(
                    "select status::text from employer_kyc where employer_id = $1::uuid",
                    employer_id,
                )
                posting = dict(posting_row)
                check(posting, kyc_status or "pending")
                if posting["status"] == "published":
                    return posting

                await conn.execute(
                    """
                    update postings
                    set
                      status = 'published',
                      published_at = coalesce(published_at, now()),
                      updated_at = now()
                    where id = $1::uuid
                    """,
                    posting_id,
                )
                await self._insert_audit_event(
                    conn=conn,
                    entity_type="posting",
                    entity_id=posting_id,
                    event_type="status_changed",
                    actor_role="employer",
                    actor_id=employer_id,
                    payload={"from_status": posting["status"], "to_status": "published"},
                )
                updated_row = await self._fetch_posting_row(conn=conn, posting_id=posting_id)
                if not updated_row:
                    raise RepositoryNotFoundError("internship not found")
                return dict(updated_row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("internship not found") from exc

    async def close_posting(
        self,
        *,
        posting_id: str,
        employer_id: str,
        check: Callable[[dict[str, Any]], None],
    ) -> dict[str, Any]:
        try:
            async with self._transaction() as conn:
                posting_row = await self._fetch_posting_row(conn=conn, posting_id=posting_id, for_update=True)
                if not posting_row or posting_row["employer_id"] != employer_id:
                    raise RepositoryNotFoundError("internship not found")

                posting = dict(posting_row)
                check(posting)
                if posting["status"] == "closed":
                    return posting

                await conn.execute(
                    "update postings set status = 'closed', updated_at = now() where id = $1::uuid",
                    posting_id,
                )
                await self._insert_audit_event(
                    conn=conn,
                    entity_type="posting",
                    entity_id=posting_id,
                    event_type="status_changed",
                    actor_role="employer",
                    actor_id=employer_id,
                    payload={"from_status": posting["status"], "to_status": "closed"},
                )
                updated_row = await self._fetch_posting_row(conn=conn, posting_id=posting_id)
                if not updated_row:
                    raise RepositoryNotFoundError("internship not found")
                return dict(updated_row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("internship not found") from exc

    async def list_kyc(self, *, status: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        statuses = self._expand_kyc_filter(status)
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              employer_id::text as employer_id,
              status::text as status,
              reason,
              updated_at
            from employer_kyc
            where ($3::text[] is null or status::text = any($3::text[]))
            order by updated_at asc
            limit $1
            offset $2
            """,
            limit,
            offset,
            statuses,
        )
        return [dict(row) for row in rows]

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
        try:
            async with self._transaction() as conn:
                previous = await conn.fetchval(
                    "select status::text from employer_kyc where employer_id = $1::uuid for update",
                    employer_id,
                )
                row = await conn.fetchrow(
                    """
                    insert into employer_kyc (employer_id, status, reason, updated_at)
                    values ($1::uuid, $2::kyc_status, $3, now())
                    on conflict (employer_id) do update
                    set
                      status = excluded.status,
                      reason = excluded.reason,
                      updated_at = excluded.updated_at
                    returning
                      employer_id::text as employer_id,
                      status::text as status,
                      reason,
                      updated_at
                    """,
                    employer_id,
                    status,
                    reason,
                )
                await self._insert_audit_event(
                    conn=conn,
                    entity_type="employer_kyc",
                    entity_id=employer_id,
                    event_type="kyc_status_changed",
                    actor_role="admin",
                    actor_id=actor_id,
                    payload={"from_status": previous or "pending", "to_status": status, "reason": reason},
                )
                return dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid employer id") from exc

    async def enqueue_notification(self, *, user_id: str, template_kind: str, data: dict[str, Any]) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into notifications (user_id, template_kind, data)
            values ($1::uuid, $2, $3::jsonb)
            """,
            user_id,
            template_kind,
            json.dumps(data, default=str),
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
        pool = await self._get_pool()
        await self._insert_audit_event(
            conn=pool,
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=event_type,
            actor_role=actor_role,
            actor_id=actor_id,
            payload=payload,
        )

    @staticmethod
    async def _insert_audit_event(
        *,
        conn: asyncpg.Connection | asyncpg.Pool,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor_role: str | None,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into audit_events (
              entity_type,
              entity_id,
              event_type,
              actor_role,
              actor_id,
              payload
            )
            values ($1, $2::uuid, $3, $4::actor_role, $5::uuid, $6::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            actor_role,
            actor_id,
            json.dumps(payload, default=str),
        )

    async def _fetch_application_row(
        self,
        *,
        conn: asyncpg.Connection | asyncpg.Pool,
        application_id: str,
    ) -> asyncpg.Record | None:
        return await conn.fetchrow(
            """
            select
              a.id::text as id,
              a.student_id::text as student_id,
              a.internship_id::text as internship_id,
              p.employer_id::text as employer_id,
              a.status::text as status,
              a.version,
              a.cover_letter,
              a.resume_url,
              a.answers,
              a.interview_at,
              a.interview_notes,
              a.created_at,
              a.updated_at
            from applications a
            join postings p on p.id = a.internship_id
            where a.id = $1::uuid
            """,
            application_id,
        )

    async def _fetch_posting_row(
        self,
        *,
        conn: asyncpg.Connection | asyncpg.Pool,
        posting_id: str,
        for_update: bool = False,
    ) -> asyncpg.Record | None:
        lock_clause = "for update" if for_update else ""
        return await conn.fetchrow(
            f"""
            select
              id::text as id,
              employer_id::text as employer_id,
              title,
              description,
              status::text as status,
              application_deadline,
              published_at,
              created_at,
              updated_at
            from postings
            where id = $1::uuid
            {lock_clause}
            """,
            posting_id,
        )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield conn
        except (pg_exc.PostgresConnectionError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("IH_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _application_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        answers = row["answers"]
        if isinstance(answers, str):
            try:
                answers = json.loads(answers)
            except json.JSONDecodeError:
                answers = {}
        if not isinstance(answers, dict):
            answers = {}

        interview = None
        if row["interview_at"] is not None:
            interview = {"scheduled_at": row["interview_at"], "notes": row["interview_notes"]}

        return {
            "id": row["id"],
            "student_id": row["student_id"],
            "internship_id": row["internship_id"],
            "employer_id": row["employer_id"],
            "status": row["status"],
            "version": int(row["version"]),
            "cover_letter": row["cover_letter"],
            "resume_url": row["resume_url"],
            "answers": answers,
            "interview": interview,
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _expand_kyc_filter(status: str | None) -> list[str] | None:
        if status is None:
            return None
        if status not in KYC_STATUSES:
            raise RepositoryValidationError(f"invalid kyc status: {status}")
        # The review queue shows both untouched and in-progress submissions.
        if status == "pending":
            return ["pending", "under_review"]
        return [status]


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if settings.repository_backend == "memory":
        from app.services.store import InMemoryRepository

        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )

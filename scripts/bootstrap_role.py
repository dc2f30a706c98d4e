#!/usr/bin/env python3
"""Emit deterministic SQL that assigns an internship hub role to a Supabase user."""

from __future__ import annotations

import argparse

ROLES = ("student", "employer", "admin")
KYC_STATUSES = ("pending", "under_review", "approved", "rejected")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(
    *,
    role: str,
    user_id: str | None,
    email: str | None,
    actor_id: str | None = None,
    kyc_status: str | None = None,
) -> str:
    if role not in ROLES:
        raise ValueError(f"unknown role: {role}")
    if kyc_status is not None and role != "employer":
        raise ValueError("--kyc-status only applies to the employer role")

    role_value = _quote_sql(role)
    actor_value = f"{_quote_sql(actor_id)}::uuid" if actor_id else "null"

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
    else:
        assert email is not None
        target_where = f"email = {_quote_sql(email)}"

    statements = [
        "-- Internship hub role bootstrap SQL",
        "-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).",
        "",
        "update auth.users",
        f"set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {role_value})",
        f"where {target_where};",
        "",
        "insert into audit_events (entity_type, entity_id, event_type, actor_role, actor_id, payload)",
        f"select 'user', id, 'role_bootstrap', 'admin', {actor_value}, jsonb_build_object('role', {role_value})",
        "from auth.users",
        f"where {target_where};",
    ]
    if kyc_status is not None:
        statements.extend(
            [
                "",
                "insert into employer_kyc (employer_id, status, updated_at)",
                f"select id, {_quote_sql(kyc_status)}::kyc_status, now()",
                "from auth.users",
                f"where {target_where}",
                "on conflict (employer_id) do update set status = excluded.status, updated_at = excluded.updated_at;",
            ]
        )
    return "\n".join(statements) + "\n"


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to assign an internship hub role to a Supabase user.")
    parser.add_argument(
        "--role",
        choices=ROLES,
        default="admin",
        help="Role to assign in auth.users.raw_app_meta_data.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    parser.add_argument("--actor-id", help="auth.users id of the admin performing the bootstrap")
    parser.add_argument(
        "--kyc-status",
        choices=KYC_STATUSES,
        help="Seed the employer KYC record (employer role only)",
    )
    args = parser.parse_args()

    try:
        sql = render_sql(
            role=args.role,
            user_id=args.user_id,
            email=args.email,
            actor_id=args.actor_id,
            kyc_status=args.kyc_status,
        )
    except ValueError as exc:
        parser.error(str(exc))
    print(sql)


if __name__ == "__main__":
    main()

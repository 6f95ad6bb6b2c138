#!/usr/bin/env python3
"""Emit deterministic SQL that grants a human role or registers a machine module."""

from __future__ import annotations

import argparse
import hashlib

HUMAN_ROLES = ("owner", "agent", "vetting_agent", "admin")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _audit_insert(*, actor: str, action: str, target_id: str, details: str) -> str:
    return (
        "insert into audit_entries (actor_id, actor_type, action, target_type, target_id, details)\n"
        f"values ({_quote_sql(actor)}, 'human', {_quote_sql(action)}, 'bootstrap', {_quote_sql(target_id)}, {details});\n"
    )


def render_role_sql(*, role: str, user_id: str | None, email: str | None, actor: str) -> str:
    if role not in HUMAN_ROLES:
        raise ValueError(f"unsupported role: {role}")
    role_value = _quote_sql(role)

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
        target_id = user_id
        details = f"jsonb_build_object('user_id', {_quote_sql(user_id)}, 'role', {role_value})"
    else:
        assert email is not None
        target_where = f"email = {_quote_sql(email)}"
        target_id = email
        details = f"jsonb_build_object('email', {_quote_sql(email)}, 'role', {role_value})"

    return (
        "-- Supabase human role bootstrap SQL\n"
        "-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).\n\n"
        "update auth.users\n"
        f"set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {role_value})\n"
        f"where {target_where};\n\n"
        + _audit_insert(actor=actor, action="human_role_bootstrap", target_id=target_id, details=details)
    )


def render_module_sql(*, module_id: str, name: str, scopes: list[str], api_key: str, actor: str) -> str:
    if not scopes:
        raise ValueError("at least one scope is required")
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    scopes_array = "array[" + ", ".join(_quote_sql(scope) for scope in sorted(set(scopes))) + "]::text[]"
    module_value = _quote_sql(module_id)

    return (
        "-- Machine module credential bootstrap SQL\n\n"
        "insert into modules (module_id, name, scopes)\n"
        f"values ({module_value}, {_quote_sql(name)}, {scopes_array})\n"
        "on conflict (module_id) do update set scopes = excluded.scopes, enabled = true;\n\n"
        "insert into module_credentials (module_id, key_hash)\n"
        f"select id, {_quote_sql(key_hash)} from modules where module_id = {module_value};\n\n"
        + _audit_insert(
            actor=actor,
            action="module_credential_bootstrap",
            target_id=module_id,
            details=f"jsonb_build_object('module_id', {module_value}, 'scopes', to_jsonb({scopes_array}))",
        )
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to bootstrap listing pipeline access.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    role_parser = subparsers.add_parser("role", help="Assign a Supabase human role")
    role_parser.add_argument(
        "--role",
        choices=HUMAN_ROLES,
        default="admin",
        help="Role to assign in auth.users.raw_app_meta_data.role",
    )
    identity_group = role_parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    role_parser.add_argument("--actor", default="system", help="Actor recorded in the audit entry")

    module_parser = subparsers.add_parser("module", help="Register a machine module API key")
    module_parser.add_argument("--module-id", default="ml-analyzer")
    module_parser.add_argument("--name", default="ML document analyzer")
    module_parser.add_argument("--scope", action="append", dest="scopes", default=None)
    module_parser.add_argument("--api-key", required=True, help="Plain API key; only its sha256 is emitted")
    module_parser.add_argument("--actor", default="system", help="Actor recorded in the audit entry")

    args = parser.parse_args()
    if args.command == "role":
        print(render_role_sql(role=args.role, user_id=args.user_id, email=args.email, actor=args.actor))
        return
    print(
        render_module_sql(
            module_id=args.module_id,
            name=args.name,
            scopes=args.scopes or ["ml:write"],
            api_key=args.api_key,
            actor=args.actor,
        )
    )


if __name__ == "__main__":
    main()

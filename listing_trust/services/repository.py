from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from listing_trust.core.config import get_settings
from listing_trust.services.audit import AUDIT_TARGET_LISTING, AuditEntry, decode_details, encode_details
from listing_trust.services.duplicates import normalize_address
from listing_trust.services.errors import (
    AuditWriteError,
    NotFoundError,
    PreconditionFailedError,
    UnavailableError,
)
from listing_trust.services.geo import bounding_box
from listing_trust.services.listings import (
    MUTABLE_FIELDS,
    PRE_PUBLICATION_STATUSES,
    ListingDraft,
    ListingRecord,
    ListingSort,
    ListingStatus,
)
from listing_trust.services.notifications import NotificationContent, NotificationEvent
from listing_trust.services.records import (
    ListingPage,
    MachineCredentialRecord,
    SubmissionResult,
    TransitionResult,
)
from listing_trust.services.state_machine import TransitionPlan
from listing_trust.services.store import InMemoryRepository

TransitionPlanner = Callable[[ListingRecord, datetime], TransitionPlan]

LISTING_COLUMNS = """
  id::text as id,
  owner_id,
  title,
  address,
  description,
  price,
  property_type,
  listing_type,
  city,
  state,
  latitude,
  longitude,
  status::text as status,
  is_duplicate,
  flagged_for_review,
  verified_at,
  rejection_reason,
  scheduled_vetting_date,
  review_notes,
  vetted_by,
  vetted_at,
  unlisted_reason,
  ml_validation_status,
  ml_confidence_score,
  ml_flagged_issues,
  ml_validated_at,
  duplicate_resolution_action,
  duplicate_resolved_at,
  admin_notes,
  version,
  created_at,
  updated_at
"""

NOTIFICATION_COLUMNS = """
  n.id::text as id,
  n.owner_id,
  n.listing_id::text as listing_id,
  n.audit_entry_id,
  n.kind,
  n.title,
  n.body,
  n.payload,
  n.status,
  n.attempts,
  n.last_error,
  n.is_read,
  n.created_at,
  n.delivered_at,
  n.read_at
"""

LISTING_SORT_ORDER: dict[str, str] = {
    "newest": "created_at desc, id",
    "oldest": "created_at asc, id",
    "urgent": "ml_validated_at asc nulls last, created_at asc, id",
    "location": "state asc nulls last, city asc nulls last, created_at desc, id",
}

NOTIFICATION_LEASE_SECONDS = 60


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float,
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

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    async def get_listing(self, listing_id: str) -> ListingRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {LISTING_COLUMNS} from listings where id = $1::uuid",
                listing_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise NotFoundError("listing not found") from exc
        if not row:
            raise NotFoundError("listing not found")
        return self._listing_row_to_record(row)

    async def list_listings(
        self,
        *,
        status: ListingStatus | None,
        is_duplicate: bool | None,
        state: str | None,
        sort: ListingSort,
        limit: int,
        offset: int,
    ) -> ListingPage:
        pool = await self._get_pool()
        filters = """
            where ($1::text is null or status::text = $1::text)
              and ($2::boolean is null or is_duplicate = $2::boolean)
              and ($3::text is null or lower(state) = lower($3::text))
        """
        params = (status.value if status else None, is_duplicate, state)
        async with pool.acquire() as conn:
            total = await conn.fetchval(f"select count(*) from listings {filters}", *params)
            rows = await conn.fetch(
                f"""
                select {LISTING_COLUMNS}
                from listings
                {filters}
                order by {LISTING_SORT_ORDER[sort]}
                limit $4
                offset $5
                """,
                *params,
                limit,
                offset,
            )
        return ListingPage(listings=[self._listing_row_to_record(row) for row in rows], total=int(total or 0))

    async def list_duplicate_pool(
        self,
        *,
        owner_id: str,
        address: str | None,
        latitude: float | None,
        longitude: float | None,
        radius_km: float,
        exclude_listing_id: str | None,
    ) -> list[ListingRecord]:
        """Prefilter rows any duplicate pass could match; exact scoring happens in Python."""
        pool = await self._get_pool()
        normalized = normalize_address(address)
        has_box = latitude is not None and longitude is not None
        min_lat = max_lat = None
        lon_bounds: list[float | None] = [None, None, None, None]
        if has_box:
            assert latitude is not None and longitude is not None
            box = bounding_box(latitude, longitude, radius_km)
            min_lat, max_lat = box.min_lat, box.max_lat
            for index, (low, high) in enumerate(box.lon_ranges):
                lon_bounds[2 * index] = low
                lon_bounds[2 * index + 1] = high

        rows = await pool.fetch(
            f"""
            select {LISTING_COLUMNS}
            from listings
            where ($1::text is null or id::text <> $1::text)
              and (
                ($2::text <> '' and normalized_address = $2::text and status <> 'rejected')
                or (
                  $3::boolean
                  and status <> 'rejected'
                  and latitude between $4::double precision and $5::double precision
                  and (
                    $6::double precision is null
                    or longitude between $6::double precision and $7::double precision
                    or longitude between $8::double precision and $9::double precision
                  )
                )
                or (owner_id = $10::text and status::text = any($11::text[]))
              )
            order by id
            """,
            exclude_listing_id,
            normalized,
            has_box,
            min_lat,
            max_lat,
            *lon_bounds,
            owner_id,
            [status.value for status in PRE_PUBLICATION_STATUSES],
        )
        return [self._listing_row_to_record(row) for row in rows]

    async def create_listing(
        self,
        *,
        owner_id: str,
        draft: ListingDraft,
        status: ListingStatus,
        is_duplicate: bool,
        actor_id: str,
        actor_type: str,
        action: str,
        details: dict[str, Any],
        build_content: Callable[[ListingRecord], NotificationContent | None],
    ) -> SubmissionResult:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into listings (
                      owner_id,
                      title,
                      address,
                      normalized_address,
                      description,
                      price,
                      property_type,
                      listing_type,
                      city,
                      state,
                      latitude,
                      longitude,
                      status,
                      is_duplicate
                    )
                    values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::listing_status, $14)
                    returning {LISTING_COLUMNS}
                    """,
                    owner_id,
                    draft.title,
                    draft.address,
                    normalize_address(draft.address),
                    draft.description,
                    draft.price,
                    draft.property_type,
                    draft.listing_type,
                    draft.city,
                    draft.state,
                    draft.latitude,
                    draft.longitude,
                    status.value,
                    is_duplicate,
                )
                listing = self._listing_row_to_record(row)
                entry = await self._insert_audit_entry(
                    conn,
                    actor_id=actor_id,
                    actor_type=actor_type,
                    action=action,
                    target_id=listing.id,
                    details={**details, "new_status": listing.status.value},
                )
                content = build_content(listing)
                notification_id = None
                if content is not None:
                    notification_id = await self._insert_notification(
                        conn,
                        owner_id=listing.owner_id,
                        listing_id=listing.id,
                        audit_entry_id=entry.id,
                        content=content,
                    )
                return SubmissionResult(listing=listing, audit_entry=entry, notification_id=notification_id)

    async def apply_transition(
        self,
        *,
        listing_id: str,
        expected_status: ListingStatus,
        expected_is_duplicate: bool,
        planner: TransitionPlanner,
        actor_id: str,
        actor_type: str,
    ) -> TransitionResult:
        """Plan and commit one transition under a row lock.

        The locked row must still match the caller's snapshot; the update is a
        compare-and-swap on status, duplicate flag and version, and the audit
        entry and outbox row commit in the same transaction or not at all.
        """
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        f"select {LISTING_COLUMNS} from listings where id = $1::uuid for update",
                        listing_id,
                    )
                    if not existing:
                        raise NotFoundError("listing not found")
                    current = self._listing_row_to_record(existing)
                    if current.status != expected_status or current.is_duplicate != expected_is_duplicate:
                        raise PreconditionFailedError("listing changed since it was read")

                    now = datetime.now(timezone.utc)
                    plan = planner(current, now)
                    expected_version = current.version

                    assignments = ["status = $5::listing_status", "updated_at = $6", "version = version + 1"]
                    values: list[Any] = [
                        listing_id,
                        plan.from_status.value,
                        plan.expected_is_duplicate,
                        expected_version,
                        plan.to_status.value,
                        now,
                    ]
                    for column in sorted(plan.changes):
                        if column not in MUTABLE_FIELDS:
                            raise ValueError(f"unsupported column: {column}")
                        values.append(plan.changes[column])
                        assignments.append(f"{column} = ${len(values)}")

                    row = await conn.fetchrow(
                        f"""
                        update listings
                        set {", ".join(assignments)}
                        where id = $1::uuid
                          and status = $2::listing_status
                          and is_duplicate = $3
                          and version = $4
                        returning {LISTING_COLUMNS}
                        """,
                        *values,
                    )
                    if not row:
                        raise PreconditionFailedError("listing changed since it was read")
                    updated = self._listing_row_to_record(row)

                    entry = await self._insert_audit_entry(
                        conn,
                        actor_id=actor_id,
                        actor_type=actor_type,
                        action=plan.action,
                        target_id=listing_id,
                        details=plan.details,
                    )
                    notification_id = None
                    if plan.notification is not None:
                        notification_id = await self._insert_notification(
                            conn,
                            owner_id=updated.owner_id,
                            listing_id=listing_id,
                            audit_entry_id=entry.id,
                            content=plan.notification,
                        )
                    return TransitionResult(
                        listing=updated,
                        audit_entry=entry,
                        notification_id=notification_id,
                        plan=plan,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise NotFoundError("listing not found") from exc

    async def list_audit_entries(self, *, target_id: str, limit: int, offset: int) -> list[AuditEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, actor_id, actor_type, action, target_type, target_id, details, created_at
            from audit_entries
            where target_type = $1 and target_id = $2
            order by created_at asc, id asc
            limit $3
            offset $4
            """,
            AUDIT_TARGET_LISTING,
            target_id,
            limit,
            offset,
        )
        return [self._audit_row_to_entry(row) for row in rows]

    async def list_notifications(
        self,
        *,
        owner_id: str,
        unread_only: bool,
        limit: int,
        offset: int,
    ) -> list[NotificationEvent]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {NOTIFICATION_COLUMNS}
            from notification_outbox n
            where n.owner_id = $1
              and ($2::boolean = false or n.is_read = false)
            order by n.created_at desc, n.id
            limit $3
            offset $4
            """,
            owner_id,
            unread_only,
            limit,
            offset,
        )
        return [self._notification_row_to_event(row) for row in rows]

    async def mark_notifications_read(self, *, owner_id: str, notification_ids: list[str] | None) -> int:
        """Mark the owner's unread notifications read; ``None`` means all of them."""
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update notification_outbox
            set is_read = true, read_at = now()
            where owner_id = $1
              and is_read = false
              and ($2::text[] is null or id::text = any($2::text[]))
            """,
            owner_id,
            notification_ids,
        )
        return int(result.split()[-1])

    async def count_unread_notifications(self, *, owner_id: str) -> int:
        pool = await self._get_pool()
        count = await pool.fetchval(
            "select count(*) from notification_outbox where owner_id = $1 and is_read = false",
            owner_id,
        )
        return int(count or 0)

    async def claim_pending_notifications(self, *, limit: int) -> list[NotificationEvent]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 500))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with due as (
                      select id
                      from notification_outbox
                      where status = 'pending'
                        and available_at <= now()
                        and (locked_until is null or locked_until <= now())
                      order by created_at asc
                      limit $1
                      for update skip locked
                    )
                    update notification_outbox n
                    set locked_until = now() + make_interval(secs => $2)
                    from due d
                    where n.id = d.id
                    returning {NOTIFICATION_COLUMNS}
                    """,
                    bounded_limit,
                    NOTIFICATION_LEASE_SECONDS,
                )
        events = [self._notification_row_to_event(row) for row in rows]
        return sorted(events, key=lambda event: event.created_at)

    async def mark_notification_delivered(self, *, notification_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update notification_outbox
            set
              status = 'delivered',
              attempts = attempts + 1,
              delivered_at = now(),
              locked_until = null,
              last_error = null
            where id = $1::uuid
            """,
            notification_id,
        )

    async def mark_notification_failed(self, *, notification_id: str, error: str, give_up: bool) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update notification_outbox
            set
              status = case when $3::boolean then 'failed' else 'pending' end,
              attempts = attempts + 1,
              last_error = $2,
              locked_until = null,
              available_at = now() + make_interval(secs => least(300, 5 * power(2, attempts)))
            where id = $1::uuid
            """,
            notification_id,
            error[:1000],
            give_up,
        )

    async def hit_rate_limit(self, *, key: str, limit: int, window_seconds: int) -> bool:
        """Count one hit against ``key``; return whether it stays within ``limit``."""
        pool = await self._get_pool()
        count = await pool.fetchval(
            """
            insert into rate_limit_counters (key, count, window_started_at, expires_at)
            values ($1, 1, now(), now() + make_interval(secs => $2))
            on conflict (key) do update
            set
              count = case
                when rate_limit_counters.expires_at <= now() then 1
                else rate_limit_counters.count + 1
              end,
              window_started_at = case
                when rate_limit_counters.expires_at <= now() then now()
                else rate_limit_counters.window_started_at
              end,
              expires_at = case
                when rate_limit_counters.expires_at <= now() then now() + make_interval(secs => $2)
                else rate_limit_counters.expires_at
              end
            returning count
            """,
            key,
            window_seconds,
        )
        return int(count) <= limit

    async def _insert_audit_entry(
        self,
        conn: asyncpg.Connection,
        *,
        actor_id: str,
        actor_type: str,
        action: str,
        target_id: str,
        details: dict[str, Any],
    ) -> AuditEntry:
        try:
            row = await conn.fetchrow(
                """
                insert into audit_entries (actor_id, actor_type, action, target_type, target_id, details)
                values ($1, $2, $3, $4, $5, $6::jsonb)
                returning id, actor_id, actor_type, action, target_type, target_id, details, created_at
                """,
                actor_id,
                actor_type,
                action,
                AUDIT_TARGET_LISTING,
                target_id,
                encode_details(details),
            )
        except asyncpg.PostgresError as exc:
            raise AuditWriteError("failed to write audit entry") from exc
        return self._audit_row_to_entry(row)

    async def _insert_notification(
        self,
        conn: asyncpg.Connection,
        *,
        owner_id: str,
        listing_id: str,
        audit_entry_id: int,
        content: NotificationContent,
    ) -> str:
        return await conn.fetchval(
            """
            insert into notification_outbox (owner_id, listing_id, audit_entry_id, kind, title, body, payload)
            values ($1, $2::uuid, $3, $4, $5, $6, $7::jsonb)
            returning id::text
            """,
            owner_id,
            listing_id,
            audit_entry_id,
            content.kind,
            content.title,
            content.body,
            json.dumps(content.payload, default=str),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise UnavailableError("LT_DATABASE_URL is required")

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
            raise UnavailableError("database unavailable") from exc

    @staticmethod
    def _listing_row_to_record(row: asyncpg.Record) -> ListingRecord:
        return ListingRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            address=row["address"],
            status=ListingStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            description=row["description"],
            price=float(row["price"]) if row["price"] is not None else None,
            property_type=row["property_type"],
            listing_type=row["listing_type"],
            city=row["city"],
            state=row["state"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            is_duplicate=bool(row["is_duplicate"]),
            flagged_for_review=bool(row["flagged_for_review"]),
            verified_at=row["verified_at"],
            rejection_reason=row["rejection_reason"],
            scheduled_vetting_date=row["scheduled_vetting_date"],
            review_notes=row["review_notes"],
            vetted_by=row["vetted_by"],
            vetted_at=row["vetted_at"],
            unlisted_reason=row["unlisted_reason"],
            ml_validation_status=row["ml_validation_status"],
            ml_confidence_score=(
                float(row["ml_confidence_score"]) if row["ml_confidence_score"] is not None else None
            ),
            ml_flagged_issues=list(row["ml_flagged_issues"] or []),
            ml_validated_at=row["ml_validated_at"],
            duplicate_resolution_action=row["duplicate_resolution_action"],
            duplicate_resolved_at=row["duplicate_resolved_at"],
            admin_notes=row["admin_notes"],
            version=int(row["version"]),
        )

    @staticmethod
    def _audit_row_to_entry(row: asyncpg.Record) -> AuditEntry:
        return AuditEntry(
            id=int(row["id"]),
            actor_id=row["actor_id"],
            actor_type=row["actor_type"],
            action=row["action"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            created_at=row["created_at"],
            details=decode_details(row["details"]),
        )

    @staticmethod
    def _notification_row_to_event(row: asyncpg.Record) -> NotificationEvent:
        return NotificationEvent(
            id=row["id"],
            owner_id=row["owner_id"],
            listing_id=row["listing_id"],
            kind=row["kind"],
            title=row["title"],
            body=row["body"],
            payload=decode_details(row["payload"]),
            audit_entry_id=row["audit_entry_id"],
            created_at=row["created_at"],
            status=row["status"],
            attempts=int(row["attempts"]),
            last_error=row["last_error"],
            is_read=bool(row["is_read"]),
            delivered_at=row["delivered_at"],
            read_at=row["read_at"],
        )


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        return InMemoryRepository.from_settings(settings)
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.operation_timeout_seconds,
    )

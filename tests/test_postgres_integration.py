from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from listing_trust.core.auth import Principal, PrincipalType
from listing_trust.core.security import ROLE_SCOPES
from listing_trust.services.coordinator import PipelineCoordinator
from listing_trust.services.errors import AuditWriteError, PreconditionFailedError
from listing_trust.services.listings import ListingDraft, ListingStatus
from listing_trust.services.repository import PostgresRepository
from listing_trust.services.state_machine import DuplicateResolution, MLVerdict, VettingDecision

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

OWNER = Principal(
    principal_type=PrincipalType.HUMAN,
    subject="owner-1",
    scopes=set(ROLE_SCOPES["owner"]),
    role="owner",
    actor_id="owner-1",
)
OTHER_OWNER = Principal(
    principal_type=PrincipalType.HUMAN,
    subject="owner-2",
    scopes=set(ROLE_SCOPES["owner"]),
    role="owner",
    actor_id="owner-2",
)
ADMIN = Principal(
    principal_type=PrincipalType.HUMAN,
    subject="admin-1",
    scopes=set(ROLE_SCOPES["admin"]),
    role="admin",
    actor_id="admin-1",
)

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("LT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require LT_DATABASE_URL or DATABASE_URL")
    _run(_apply_schema(url))
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_truncate_integration_tables(database_url))


def test_concurrent_resolutions_have_exactly_one_winner(database_url: str) -> None:
    async def scenario() -> tuple[list[Any], Any]:
        async with _repository(database_url) as repository:
            coordinator = PipelineCoordinator(repository)
            other_instance = PipelineCoordinator(repository)
            await coordinator.submit_listing(OWNER, _draft())
            duplicate, _ = await coordinator.submit_listing(OTHER_OWNER, _draft())
            assert duplicate.is_duplicate is True

            outcomes = await asyncio.gather(
                coordinator.resolve_duplicate(ADMIN, duplicate.id, DuplicateResolution(action="keep_both")),
                other_instance.resolve_duplicate(
                    ADMIN,
                    duplicate.id,
                    DuplicateResolution(action="reject_duplicate", rejection_reason="copy of another listing"),
                ),
                return_exceptions=True,
            )
            return outcomes, await repository.get_listing(duplicate.id)

    outcomes, stored = _run(scenario())

    winners = [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]
    losers = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], PreconditionFailedError)
    assert stored.is_duplicate is False
    assert stored.version == 2

    rows = _run(_fetch(database_url, "select action from audit_entries where action = 'duplicate_resolution'"))
    assert len(rows) == 1


def test_approving_twice_fails_the_second_time(database_url: str) -> None:
    async def scenario() -> None:
        async with _repository(database_url) as repository:
            coordinator = PipelineCoordinator(repository)
            listing, _ = await coordinator.submit_listing(OWNER, _draft())
            await coordinator.record_ml_verdict(ADMIN, listing.id, MLVerdict(verdict="passed"))
            approved, _ = await coordinator.record_vetting_decision(ADMIN, listing.id, VettingDecision(action="approve"))
            assert approved.status == ListingStatus.LIVE
            with pytest.raises(PreconditionFailedError):
                await coordinator.record_vetting_decision(ADMIN, listing.id, VettingDecision(action="approve"))

    _run(scenario())

    actions = _run(_fetch(database_url, "select action from audit_entries order by id"))
    assert [row["action"] for row in actions] == ["listing_submitted", "ml_validation_update", "property_vetting"]


def test_failed_audit_write_leaves_listing_and_outbox_untouched(database_url: str) -> None:
    async def scenario() -> str:
        async with _repository(database_url) as repository:
            coordinator = PipelineCoordinator(repository)
            listing, _ = await coordinator.submit_listing(OWNER, _draft())
            await coordinator.record_ml_verdict(ADMIN, listing.id, MLVerdict(verdict="passed"))
            before = await repository.get_listing(listing.id)

            await _execute(
                database_url,
                """
                create or replace function audit_entries_reject_vetting() returns trigger as $$
                begin
                  if new.action = 'property_vetting' then
                    raise exception 'audit storage unavailable';
                  end if;
                  return new;
                end;
                $$ language plpgsql;
                create trigger audit_entries_reject_vetting
                  before insert on audit_entries
                  for each row execute function audit_entries_reject_vetting();
                """,
            )
            try:
                with pytest.raises(AuditWriteError):
                    await coordinator.record_vetting_decision(ADMIN, listing.id, VettingDecision(action="approve"))
            finally:
                await _execute(
                    database_url,
                    """
                    drop trigger if exists audit_entries_reject_vetting on audit_entries;
                    drop function if exists audit_entries_reject_vetting();
                    """,
                )

            after = await repository.get_listing(listing.id)
            assert after.status == ListingStatus.PENDING_VETTING
            assert after.version == before.version
            assert after.verified_at is None
            return listing.id

    listing_id = _run(scenario())

    outbox = _run(
        _fetch(
            database_url,
            "select title from notification_outbox where listing_id = $1::uuid order by created_at",
            listing_id,
        )
    )
    assert [row["title"] for row in outbox] == ["Listing Submitted", "ML Validation Passed"]


@pytest.mark.parametrize(
    "statement",
    [
        "update audit_entries set action = 'rewritten'",
        "delete from audit_entries",
    ],
)
def test_audit_entries_reject_update_and_delete(database_url: str, statement: str) -> None:
    async def scenario() -> None:
        async with _repository(database_url) as repository:
            await PipelineCoordinator(repository).submit_listing(OWNER, _draft())

    _run(scenario())

    with pytest.raises(asyncpg.PostgresError, match="append-only"):
        _run(_execute(database_url, statement))

    rows = _run(_fetch(database_url, "select action from audit_entries"))
    assert [row["action"] for row in rows] == ["listing_submitted"]


def test_concurrent_claims_never_share_a_notification(database_url: str) -> None:
    async def scenario() -> tuple[list[str], list[str]]:
        async with _repository(database_url) as first, _repository(database_url) as second:
            coordinator = PipelineCoordinator(first)
            for index in range(4):
                await coordinator.submit_listing(OWNER, _draft(address=f"{index} Marina Road, Lagos Island"))
            left, right = await asyncio.gather(
                first.claim_pending_notifications(limit=3),
                second.claim_pending_notifications(limit=3),
            )
            return [event.id for event in left], [event.id for event in right]

    left, right = _run(scenario())

    assert not set(left) & set(right)
    assert len(left) + len(right) == 4


def test_rate_limit_counter_is_shared_between_instances(database_url: str) -> None:
    async def scenario() -> list[bool]:
        async with _repository(database_url) as first, _repository(database_url) as second:
            return [
                await first.hit_rate_limit(key="submit:owner-1", limit=2, window_seconds=3600),
                await second.hit_rate_limit(key="submit:owner-1", limit=2, window_seconds=3600),
                await first.hit_rate_limit(key="submit:owner-1", limit=2, window_seconds=3600),
                await second.hit_rate_limit(key="submit:owner-2", limit=2, window_seconds=3600),
            ]

    assert _run(scenario()) == [True, True, False, True]


def _draft(*, address: str = "12 Admiralty Way, Lekki") -> ListingDraft:
    return ListingDraft(
        title="Three bedroom flat",
        address=address,
        price=250000.0,
        listing_type="sale",
    )


@asynccontextmanager
async def _repository(database_url: str) -> AsyncIterator[PostgresRepository]:
    repository = PostgresRepository(
        database_url=database_url,
        min_pool_size=1,
        max_pool_size=4,
        command_timeout_seconds=10.0,
    )
    try:
        yield repository
    finally:
        await repository.close()


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _with_connection(database_url: str, action: Callable[[asyncpg.Connection], Awaitable[T]]) -> T:
    conn = await asyncpg.connect(database_url)
    try:
        return await action(conn)
    finally:
        await conn.close()


async def _apply_schema(database_url: str) -> None:
    await _execute(database_url, SCHEMA_PATH.read_text(encoding="utf-8"))


async def _execute(database_url: str, statement: str) -> None:
    await _with_connection(database_url, lambda conn: conn.execute(statement))


async def _fetch(database_url: str, query: str, *args: Any) -> list[asyncpg.Record]:
    return await _with_connection(database_url, lambda conn: conn.fetch(query, *args))


async def _truncate_integration_tables(database_url: str) -> None:
    await _execute(
        database_url,
        """
        truncate table
          notification_outbox,
          audit_entries,
          listings,
          rate_limit_counters
        restart identity cascade
        """,
    )

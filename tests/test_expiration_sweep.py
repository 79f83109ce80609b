from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from premarket_app.core.events import PreMarketRequestExpired
from premarket_app.jobs.pre_market_expiration import (
    JOB_ID,
    ExpirationScheduler,
    SweepGuard,
    run_expiration_sweep,
)
from premarket_app.models.enums import PreMarketStatus
from premarket_app.repos.pre_market_repo import PreMarketRepo
from premarket_app.services.pre_market_service import PreMarketService


def _past_window(days_ago: int):
    latest = date.today() - timedelta(days=days_ago)
    return {
        "moving_earliest": latest - timedelta(days=30),
        "moving_latest": latest,
    }


# ---------------------------------------------------------------------------
# PreMarketService.expire_requests
# ---------------------------------------------------------------------------

class TestExpireRequests:
    async def test_past_window_goes_inactive_and_leaves_agent_feed(
        self, db_session, bus, renter, agent, make_pre_market
    ):
        stale = await make_pre_market(renter, **_past_window(days_ago=1))
        fresh = await make_pre_market(renter)
        service = PreMarketService(db_session, events=bus)

        result = await service.expire_requests()

        repo = PreMarketRepo(db_session)
        stored = await repo.get_by_id(stale.id)
        assert result.expired_count == 1
        assert result.deleted_count == 0
        assert stored.is_active is False
        assert stored.expired_at is not None
        assert stored.status == PreMarketStatus.ACTIVE

        feed = await service.list_for_agent(agent)
        assert [item["id"] for item in feed.items] == [str(fresh.id)]

    async def test_long_past_window_is_retired(
        self, db_session, bus, renter, make_pre_market
    ):
        old = await make_pre_market(renter, **_past_window(days_ago=45))
        service = PreMarketService(db_session, events=bus)

        result = await service.expire_requests(hard_retire_days=30)

        stored = await PreMarketRepo(db_session).get_by_id(old.id)
        assert result.deleted_count == 1
        assert stored.status == PreMarketStatus.DELETED
        assert stored.deleted_at is not None
        [event] = bus.of_type(PreMarketRequestExpired)
        assert event.retired is True

    async def test_passed_deadline_expires_even_with_future_window(
        self, db_session, bus, renter, make_pre_market
    ):
        now = datetime.now(timezone.utc)
        request = await make_pre_market(renter, expires_at=now - timedelta(hours=1))
        service = PreMarketService(db_session, events=bus)

        result = await service.expire_requests(now=now)

        stored = await PreMarketRepo(db_session).get_by_id(request.id)
        assert result.expired_count == 1
        assert stored.is_active is False

    async def test_inactive_and_deleted_requests_are_skipped(
        self, db_session, bus, renter, make_pre_market
    ):
        await make_pre_market(renter, is_active=False, **_past_window(days_ago=2))
        await make_pre_market(
            renter,
            status=PreMarketStatus.DELETED,
            is_active=False,
            **_past_window(days_ago=2),
        )
        service = PreMarketService(db_session, events=bus)

        result = await service.expire_requests()

        assert (result.expired_count, result.deleted_count, result.failed_count) == (
            0,
            0,
            0,
        )
        assert bus.events == []

    async def test_one_failing_item_does_not_stop_the_batch(
        self, db_session, bus, renter, make_pre_market, monkeypatch
    ):
        for days_ago in range(1, 11):
            await make_pre_market(renter, **_past_window(days_ago=days_ago))

        original_expire = PreMarketRepo.expire
        calls = {"n": 0}

        async def flaky_expire(self, pre_market_id, now, retire):
            calls["n"] += 1
            if calls["n"] == 3:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return await original_expire(self, pre_market_id, now, retire)

        monkeypatch.setattr(PreMarketRepo, "expire", flaky_expire)
        service = PreMarketService(db_session, events=bus)

        result = await service.expire_requests()

        assert result.expired_count == 9
        assert result.failed_count == 1
        assert result.deleted_count == 0
        assert len(bus.of_type(PreMarketRequestExpired)) == 9

    async def test_concurrently_changed_item_is_not_counted(
        self, db_session, bus, renter, make_pre_market, monkeypatch
    ):
        request = await make_pre_market(renter, **_past_window(days_ago=1))
        original_find = PreMarketRepo.find_expirable_ids

        async def find_then_renter_pauses(self, today, now):
            candidates = await original_find(self, today, now)
            await self.set_active(request.id, False)
            return candidates

        monkeypatch.setattr(PreMarketRepo, "find_expirable_ids", find_then_renter_pauses)
        service = PreMarketService(db_session, events=bus)

        result = await service.expire_requests()

        assert (result.expired_count, result.failed_count) == (0, 0)
        assert bus.events == []


# ---------------------------------------------------------------------------
# run_expiration_sweep
# ---------------------------------------------------------------------------

class TestRunExpirationSweep:
    async def test_runs_and_reports_counts(
        self, session_factory, bus, renter, make_pre_market
    ):
        await make_pre_market(renter, **_past_window(days_ago=3))
        guard = SweepGuard()

        result = await run_expiration_sweep(
            session_factory=session_factory, guard=guard, events=bus
        )

        assert result.expired_count == 1
        assert guard.running is False

    async def test_skips_while_previous_run_holds_the_guard(self, session_factory, bus):
        guard = SweepGuard()
        assert guard.try_acquire()

        result = await run_expiration_sweep(
            session_factory=session_factory, guard=guard, events=bus
        )

        assert result is None
        assert guard.running is True

    async def test_batch_query_failure_is_logged_and_swallowed(
        self, session_factory, bus, monkeypatch
    ):
        async def broken_find(self, today, now):
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        monkeypatch.setattr(PreMarketRepo, "find_expirable_ids", broken_find)
        guard = SweepGuard()

        result = await run_expiration_sweep(
            session_factory=session_factory, guard=guard, events=bus
        )

        assert result is None
        assert guard.running is False


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class TestExpirationScheduler:
    async def test_registers_single_instance_interval_job(self):
        scheduler = ExpirationScheduler(interval_seconds=60)
        scheduler.scheduler.start = MagicMock()

        scheduler.start()

        job = scheduler.scheduler.get_job(JOB_ID)
        assert job is not None
        assert job.trigger.interval == timedelta(seconds=60)
        assert job.max_instances == 1
        assert job.coalesce is True
        scheduler.scheduler.start.assert_called_once()

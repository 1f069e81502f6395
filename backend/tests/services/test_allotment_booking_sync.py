"""
tests/services/test_allotment_booking_sync.py

预订服务、渠道同步、分析服务与分析定时任务
"""
import pytest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import ANY, MagicMock, call
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from fastapi import HTTPException
from sqlalchemy.orm import sessionmaker

from app.models.schemas import BookingRequest, WebhookRequest
from app.security.auth import Caller, ROLE_CHANNEL_MANAGER
from app.services.analytics_service import AnalyticsService
from app.services.analytics_sweep import SWEEP_JOB_ID, register_analytics_sweep, run_analytics_sweep
from app.services.channel_sync_service import ChannelSyncService
from app.services.inventory_store import InventoryStore
from app.services.reservation_service import ReservationService
from app.services.scheduler_backend import APSchedulerBackend
from app.services.sync_retry import SYNC_RETRY_JOB_ID, register_sync_retry, run_sync_retry
from core.allotment import reservation
from core.allotment.channel_sync import ChannelSyncError
from core.allotment.errors import AllotmentValidationError, InsufficientInventoryError
from core.allotment.models import ChangeAction, ChannelManagerIntegration, ConfigStatus
from core.scheduler import SchedulerRegistry

D = date(2023, 6, 1)
NOW = datetime(2023, 6, 1, 9, 0, tzinfo=timezone.utc)


def booking(rooms=3, nights=2, **overrides):
    payload = {
        "room_type_id": "RT-STD", "channel_id": "direct",
        "check_in": D, "check_out": D + timedelta(days=nights), "rooms": rooms,
    }
    payload.update(overrides)
    return BookingRequest(**payload)


@pytest.fixture
def connected_config(make_config, persist_config):
    config = make_config()
    config.integration = ChannelManagerIntegration(provider="siteminder", is_connected=True)
    return persist_config(config)


class TestReservationService:
    """预订 / 释放编排"""

    def test_reserve_then_release(self, db_session, stored_config, clock, sync_port, manager_caller):
        service = ReservationService(db_session, clock, sync_port)

        reserved = service.reserve(booking(booking_reference="BK-1"), manager_caller)
        assert reserved["version"] == 2
        assert [a["sold"] for a in reserved["allocations"]] == [3, 3]

        released = service.release(booking(), manager_caller)
        assert released["version"] == 3
        assert [a["available"] for a in released["allocations"]] == [10, 10]

        store = InventoryStore(db_session)
        entries = store.query_log("cfg-1")
        assert [e.action for e in entries] == [ChangeAction.CREATED, ChangeAction.ALLOCATED, ChangeAction.RELEASED]
        assert entries[1].changes["booking_reference"] == "BK-1"
        sync_port.push.assert_not_called()

    def test_insufficient_inventory_leaves_store_unchanged(self, db_session, stored_config, clock, sync_port,
                                                           manager_caller):
        service = ReservationService(db_session, clock, sync_port)
        with pytest.raises(InsufficientInventoryError):
            service.reserve(booking(rooms=11), manager_caller)

        assert InventoryStore(db_session).load("H1", "RT-STD").version == 1

    def test_other_hotel_forbidden(self, db_session, stored_config, clock, sync_port, staff_caller):
        service = ReservationService(db_session, clock, sync_port)
        with pytest.raises(HTTPException) as exc:
            service.reserve(booking(hotel_id="H2"), staff_caller)
        assert exc.value.status_code == 403

    def test_connected_integration_pushes_after_commit(self, db_session, connected_config, clock, sync_port,
                                                       manager_caller):
        ReservationService(db_session, clock, sync_port).reserve(booking(), manager_caller)

        assert sync_port.push.call_args_list == [
            call("allocation", ANY, D, D + timedelta(days=1)),
            call("rate", ANY, D, D + timedelta(days=1)),
            call("restrictions", ANY, D, D + timedelta(days=1)),
        ]
        assert InventoryStore(db_session).get_sync_state("cfg-1") == (False, clock.now_utc())


class TestChannelSync:
    """推送重试与 needs_sync 标记"""

    def test_failed_push_flags_needs_sync_without_waiting(self, db_session, connected_config, clock, sync_port):
        sync_port.push.side_effect = ChannelSyncError("channel manager offline")
        service = ChannelSyncService(db_session, sync_port, clock)

        result = service.push(connected_config, D, D)

        assert result["success"] is False
        assert result["needs_sync"] is True
        assert [r["attempts"] for r in result["results"]] == [1, 1, 1]
        store = InventoryStore(db_session)
        assert store.get_sync_state("cfg-1") == (True, None)
        assert len(store.sync_attempts("cfg-1")) == 3
        assert [item["config_id"] for item in service.list_needs_sync("H1")] == ["cfg-1"]
        assert store.load("H1", "RT-STD").version == 1

    def test_retry_waits_for_backoff_then_clears_flag(self, db_session, connected_config, clock, sync_port):
        sync_port.push.side_effect = [ChannelSyncError("timeout"), None, None, None]
        service = ChannelSyncService(db_session, sync_port, clock)
        service.push(connected_config, D, D)

        assert service.retry_pending() == []

        clock.advance(seconds=1)
        retried = service.retry_pending()

        assert [(r["config_id"], r["kind"], r["attempts"], r["success"]) for r in retried] == [
            ("cfg-1", "allocation", 2, True),
        ]
        assert InventoryStore(db_session).get_sync_state("cfg-1") == (False, clock.now_utc())
        assert service.list_needs_sync("H1") == []

    def test_retries_stop_after_max_attempts(self, db_session, connected_config, clock, sync_port):
        sync_port.push.side_effect = ChannelSyncError("down")
        service = ChannelSyncService(db_session, sync_port, clock)
        service.push(connected_config, D, D)

        for _ in range(6):
            clock.advance(seconds=600)
            service.retry_pending()

        store = InventoryStore(db_session)
        attempts = store.sync_attempts("cfg-1")
        assert len(attempts) == 15
        assert max(a.attempt for a in attempts) == 5
        assert store.get_sync_state("cfg-1") == (True, None)

    def test_flag_kept_until_failed_range_is_covered(self, db_session, connected_config, clock, sync_port):
        sync_port.push.side_effect = [ChannelSyncError("down"), None, None]
        service = ChannelSyncService(db_session, sync_port, clock)
        service.push(connected_config, D, D + timedelta(days=1))
        sync_port.push.side_effect = None

        other = service.push(connected_config, D + timedelta(days=10), D + timedelta(days=10), kinds=["allocation"])
        assert other["success"] is True
        assert other["needs_sync"] is True

        covering = service.push(connected_config, D, D + timedelta(days=5), kinds=["allocation"])
        assert covering["needs_sync"] is False
        assert InventoryStore(db_session).get_sync_state("cfg-1") == (False, clock.now_utc())

    def test_reservation_commits_even_when_sync_fails(self, db_session, connected_config, clock, sync_port,
                                                      manager_caller):
        sync_port.push.side_effect = ChannelSyncError("down")
        service = ReservationService(db_session, clock, sync_port, sleep=lambda _: None)

        result = service.reserve(booking(), manager_caller)

        assert result["version"] == 2
        assert InventoryStore(db_session).get_sync_state("cfg-1")[0] is True

    def test_webhook_updates_applied(self, db_session, stored_config, clock, sync_port):
        caller = Caller(user_id="cm-1", hotel_id="H1", role=ROLE_CHANNEL_MANAGER)
        service = ChannelSyncService(db_session, sync_port, clock)

        result = service.apply_webhook(WebhookRequest(hotel_id="H1", room_type_id="RT-STD", updates=[
            {"date": date(2023, 6, 2), "channel_id": "direct", "sold": 4, "rate": 88.0},
        ]), caller)

        assert result == {"config_id": "cfg-1", "version": 2, "processed": 1}
        store = InventoryStore(db_session)
        assert store.load("H1", "RT-STD").daily_allotments.get(date(2023, 6, 2)).channel("direct").available == 6
        assert store.query_log("cfg-1")[-1].action == ChangeAction.SYNCED

    def test_webhook_other_hotel_forbidden(self, db_session, stored_config, clock, sync_port):
        caller = Caller(user_id="cm-2", hotel_id="H2", role=ROLE_CHANNEL_MANAGER)
        with pytest.raises(HTTPException):
            ChannelSyncService(db_session, sync_port, clock).apply_webhook(WebhookRequest(
                hotel_id="H1", room_type_id="RT-STD",
                updates=[{"date": date(2023, 6, 2), "channel_id": "direct", "sold": 1}],
            ), caller)


@pytest.fixture
def sold_config(make_config, persist_config):
    config = make_config()
    reservation.reserve(config, reservation.StayRequest("direct", D, D + timedelta(days=2), 3), NOW)
    return persist_config(config)


class TestAnalyticsService:
    """分析服务"""

    def test_run_saves_window_and_recommendations(self, db_session, sold_config, clock, manager_caller):
        service = AnalyticsService(db_session, clock)
        result = service.run("cfg-1", manager_caller, D, date(2023, 6, 7))

        assert result["version"] == 2
        assert result["window"]["overall_metrics"]["total_sold"] == 6
        assert [r["recommendation_type"] for r in result["recommendations"]] == [
            "decrease_allocation", "adjust_rates",
        ]

        stored = InventoryStore(db_session).load("H1", "RT-STD")
        assert len(stored.analytics.windows) == 1
        assert stored.analytics.last_calculated == clock.now_utc()
        assert len(service.get_recommendations("cfg-1", manager_caller)["recommendations"]) == 2

        performance = service.channel_performance("cfg-1", manager_caller)
        assert performance["channels"][0]["total_sold"] == 6
        assert performance["channels"][0]["channel_name"] == "direct"

    def test_group_by_day(self, db_session, sold_config, clock, manager_caller):
        result = AnalyticsService(db_session, clock).run("cfg-1", manager_caller, D, date(2023, 6, 3), group_by="day")
        assert [d["total_sold"] for d in result["days"]] == [3, 3, 0]

    def test_invalid_group_by(self, db_session, sold_config, clock, manager_caller):
        with pytest.raises(AllotmentValidationError):
            AnalyticsService(db_session, clock).run("cfg-1", manager_caller, D, D, group_by="week")

    def test_optimize_adds_inactive_rule(self, db_session, sold_config, clock, manager_caller):
        result = AnalyticsService(db_session, clock).optimize("cfg-1", manager_caller)

        assert result["version"] == 2
        assert result["equal_share"] is True
        assert result["rule"]["is_active"] is False
        stored = InventoryStore(db_session).load("H1", "RT-STD")
        assert [r.is_active for r in stored.allocation_rules] == [False]

    def test_sweep_processes_due_configs_once(self, db_session, sold_config, make_config, persist_config, clock):
        inactive = make_config(config_id="cfg-2", room_type_id="RT-OLD")
        inactive.status = ConfigStatus.INACTIVE
        persist_config(inactive)
        service = AnalyticsService(db_session, clock)

        assert service.sweep() == ["cfg-1"]
        assert service.sweep() == []
        clock.advance(days=1)
        assert service.sweep() == ["cfg-1"]


class TestAnalyticsSweepJob:
    """定时任务注册"""

    @pytest.fixture(autouse=True)
    def clear_registry(self):
        registry = SchedulerRegistry()
        registry.clear()
        yield
        registry.clear()

    def test_register_uses_configured_cron(self):
        scheduler = MagicMock()
        register_analytics_sweep(scheduler, cron="0 * * * *")

        scheduler.schedule.assert_called_once_with(SWEEP_JOB_ID, run_analytics_sweep, "0 * * * *")

    def test_run_sweep_with_session_factory(self, db_engine, stored_config):
        factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
        assert run_analytics_sweep(factory) == ["cfg-1"]

    def test_registry_holds_scheduler(self):
        backend = APSchedulerBackend(scheduler=MagicMock())
        SchedulerRegistry().register(backend)
        assert SchedulerRegistry().scheduler is backend


class TestSyncRetryJob:
    """补推任务注册"""

    def test_register_uses_configured_cron(self):
        scheduler = MagicMock()
        register_sync_retry(scheduler)

        scheduler.schedule.assert_called_once_with(SYNC_RETRY_JOB_ID, run_sync_retry, "* * * * *")

    def test_run_retry_with_session_factory(self, db_engine, stored_config):
        factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
        assert run_sync_retry(factory) == []


class TestAPSchedulerBackend:
    """APScheduler 后端"""

    def test_start_and_shutdown_follow_running_state(self):
        scheduler = MagicMock()
        scheduler.running = False
        backend = APSchedulerBackend(scheduler=scheduler)
        backend.start()
        backend.shutdown()

        scheduler.start.assert_called_once()
        scheduler.shutdown.assert_not_called()

    def test_schedule_uses_crontab_trigger(self):
        scheduler = MagicMock()
        func = lambda: None
        APSchedulerBackend(scheduler=scheduler).schedule("sweep", func, "5 * * * *")

        args, kwargs = scheduler.add_job.call_args
        assert args == (func,)
        assert isinstance(kwargs["trigger"], CronTrigger)
        assert kwargs["id"] == "sweep"
        assert kwargs["replace_existing"] is True

    def test_describe_jobs(self):
        scheduler = MagicMock()
        job = MagicMock()
        job.id = "sweep"
        job.name = None
        job.trigger = "cron[minute='5']"
        job.next_run_time = None
        scheduler.get_jobs.return_value = [job]
        scheduler.get_job.return_value = None

        backend = APSchedulerBackend(scheduler=scheduler)
        assert backend.jobs()[0] == {
            "id": "sweep", "name": "sweep", "trigger": "cron[minute='5']",
            "next_run_time": None, "status": "paused",
        }
        assert backend.job("missing") is None
        with pytest.raises(ValueError):
            backend.run_now("missing")

    def test_run_now_calls_function(self):
        scheduler = MagicMock()
        job = MagicMock()
        scheduler.get_job.return_value = job
        APSchedulerBackend(scheduler=scheduler).run_now("sweep")
        job.func.assert_called_once()

    def test_unschedule_missing_job_ignored(self):
        scheduler = MagicMock()
        scheduler.remove_job.side_effect = JobLookupError("sweep")
        APSchedulerBackend(scheduler=scheduler).unschedule("sweep")
        scheduler.remove_job.assert_called_once_with("sweep")

"""
tests/core/test_allotment_reservation.py

预订引擎：预留 / 释放、边界与限制条件
"""
import pytest
from datetime import date, datetime, timedelta, timezone

from core.allotment.clock import Deadline, FixedClock
from core.allotment.daily_records import recompute
from core.allotment.errors import (
    AllotmentValidationError, ClosedError, DeadlineExceededError, InsufficientInventoryError,
    InvariantViolationError,
)
from core.allotment.models import ConfigStatus, Restrictions
from core.allotment.reservation import StayRequest, release, reserve

NOW = datetime(2023, 6, 1, 9, 0, tzinfo=timezone.utc)
D = date(2023, 6, 1)


def stay(check_in, check_out, rooms=1, channel_id="direct", booked_on=None):
    return StayRequest(channel_id=channel_id, check_in=check_in, check_out=check_out,
                       rooms=rooms, booked_on=booked_on)


def direct(config, day):
    return config.daily_allotments.get(day).channel("direct")


class TestReserve:
    """预留房间"""

    def test_baseline_reservation(self, make_config):
        """10 间房，预订 3 间两晚"""
        config = make_config()
        result = reserve(config, stay(date(2023, 6, 1), date(2023, 6, 3), rooms=3), NOW)

        assert [a.date for a in result.allocations] == [date(2023, 6, 1), date(2023, 6, 2)]
        for day in (date(2023, 6, 1), date(2023, 6, 2)):
            record = config.daily_allotments.get(day)
            assert direct(config, day).sold == 3
            assert direct(config, day).available == 7
            assert record.occupancy_rate == 30.0
        assert direct(config, date(2023, 6, 3)).sold == 0

    def test_exactly_available_then_one_more(self, make_config):
        config = make_config()
        reserve(config, stay(D, D + timedelta(days=1), rooms=10), NOW)
        assert direct(config, D).sold == 10
        assert direct(config, D).available == 0

        with pytest.raises(InsufficientInventoryError) as exc:
            reserve(config, stay(D, D + timedelta(days=1), rooms=1), NOW)
        assert exc.value.day == D
        assert exc.value.details["gap"] == 1

    def test_first_offending_date_reported(self, make_config):
        config = make_config()
        direct(config, date(2023, 6, 3)).sold = 9
        recompute(config.daily_allotments.get(date(2023, 6, 3)))

        with pytest.raises(InsufficientInventoryError) as exc:
            reserve(config, stay(date(2023, 6, 1), date(2023, 6, 5), rooms=2), NOW)
        assert exc.value.day == date(2023, 6, 3)
        assert exc.value.details["available"] == 1
        # 失败时任何一天都不变
        assert direct(config, date(2023, 6, 1)).sold == 0
        assert direct(config, date(2023, 6, 2)).sold == 0

    def test_overbooking_up_to_limit(self, make_config):
        config = make_config(overbooking_allowed=True, overbooking_limit=2)
        result = reserve(config, stay(D, D + timedelta(days=1), rooms=12), NOW)

        assert direct(config, D).sold == 12
        assert direct(config, D).available == -2
        assert result.allocations[0].overbooking == 2

        with pytest.raises(InsufficientInventoryError):
            reserve(config, stay(D, D + timedelta(days=1), rooms=1), NOW)

    def test_zero_inventory_always_insufficient(self, make_config):
        config = make_config(total_inventory=0, overbooking_allowed=True, overbooking_limit=5)
        with pytest.raises(InsufficientInventoryError):
            reserve(config, stay(D, D + timedelta(days=1)), NOW)
        assert config.daily_allotments.get(D).occupancy_rate == 0.0

    def test_closed_to_arrival(self, make_config):
        config = make_config()
        direct(config, date(2023, 6, 5)).restrictions = Restrictions(closed_to_arrival=True)

        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(date(2023, 6, 5), date(2023, 6, 7)), NOW)
        assert exc.value.restriction == "closed_to_arrival"
        assert exc.value.day == date(2023, 6, 5)

        reserve(config, stay(date(2023, 6, 4), date(2023, 6, 7)), NOW)
        assert direct(config, date(2023, 6, 5)).sold == 1

    def test_closed_to_departure_checked_on_checkout_day(self, make_config):
        config = make_config()
        direct(config, date(2023, 6, 3)).restrictions = Restrictions(closed_to_departure=True)

        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(date(2023, 6, 1), date(2023, 6, 3)), NOW)
        assert exc.value.restriction == "closed_to_departure"

    def test_stop_sell_inside_stay(self, make_config):
        config = make_config()
        direct(config, date(2023, 6, 2)).restrictions = Restrictions(stop_sell=True)

        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(date(2023, 6, 1), date(2023, 6, 4)), NOW)
        assert exc.value.restriction == "stop_sell"
        assert exc.value.day == date(2023, 6, 2)

    def test_blackout_day(self, make_config):
        config = make_config()
        config.daily_allotments.get(date(2023, 6, 2)).is_blackout = True

        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(date(2023, 6, 1), date(2023, 6, 3)), NOW)
        assert exc.value.restriction == "blackout"

    def test_minimum_and_maximum_stay(self, make_config):
        config = make_config()
        config.channels[0].restrictions = Restrictions(minimum_stay=2, maximum_stay=3)

        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(D, D + timedelta(days=1)), NOW)
        assert exc.value.restriction == "minimum_stay"

        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(D, D + timedelta(days=4)), NOW)
        assert exc.value.restriction == "maximum_stay"

        reserve(config, stay(D, D + timedelta(days=2)), NOW)

    def test_advance_booking_window(self, make_config):
        config = make_config()
        config.channels[0].min_advance_booking = 3

        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(date(2023, 6, 3), date(2023, 6, 4), booked_on=date(2023, 6, 1)), NOW)
        assert exc.value.restriction == "advance_booking"
        assert exc.value.details["lead_days"] == 2

        reserve(config, stay(date(2023, 6, 4), date(2023, 6, 5), booked_on=date(2023, 6, 1)), NOW)

    def test_inactive_config_and_channel(self, make_config):
        config = make_config()
        config.channels[0].is_active = False
        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(D, D + timedelta(days=1)), NOW)
        assert exc.value.restriction == "channel_inactive"

        config = make_config()
        config.status = ConfigStatus.SUSPENDED
        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(D, D + timedelta(days=1)), NOW)
        assert exc.value.restriction == "config_inactive"

    def test_unknown_channel_and_bad_range(self, make_config):
        config = make_config()
        with pytest.raises(AllotmentValidationError):
            reserve(config, stay(D, D + timedelta(days=1), channel_id="expedia"), NOW)
        with pytest.raises(AllotmentValidationError) as exc:
            reserve(config, stay(D, D, rooms=0), NOW)
        assert {e["field"] for e in exc.value.errors} == {"rooms", "check_out"}

    def test_missing_channel_allotment(self, make_config):
        config = make_config(channels=("direct", "expedia"), allocations={"direct": 10})

        with pytest.raises(ClosedError) as exc:
            reserve(config, stay(D, D + timedelta(days=1), channel_id="expedia"), NOW, auto_create=False)
        assert exc.value.restriction == "channel_not_allotted"

        # 自动创建的渠道配额 allocated = 0，没有超售容忍量时仍然不足
        with pytest.raises(InsufficientInventoryError):
            reserve(config, stay(D, D + timedelta(days=1), channel_id="expedia"), NOW)
        assert config.daily_allotments.get(D).channel("expedia") is None

    def test_day_without_record_uses_default_inventory(self, make_config):
        config = make_config(days=0)
        with pytest.raises(InsufficientInventoryError):
            reserve(config, stay(D, D + timedelta(days=1)), NOW)
        assert D not in config.daily_allotments

    def test_deadline_exceeded(self, make_config):
        config = make_config()
        clock = FixedClock(NOW)
        deadline = Deadline(clock, 5)
        clock.advance(seconds=6)

        with pytest.raises(DeadlineExceededError):
            reserve(config, stay(D, D + timedelta(days=2)), NOW, deadline=deadline)
        assert direct(config, D).sold == 0


class TestRelease:
    """释放房间"""

    def test_reserve_then_release_restores_state(self, make_config):
        config = make_config()
        before = [(direct(config, d).sold, direct(config, d).available)
                  for d in (date(2023, 6, 1), date(2023, 6, 2))]

        reserve(config, stay(date(2023, 6, 1), date(2023, 6, 3), rooms=4), NOW)
        release(config, stay(date(2023, 6, 1), date(2023, 6, 3), rooms=4), NOW)

        after = [(direct(config, d).sold, direct(config, d).available)
                 for d in (date(2023, 6, 1), date(2023, 6, 2))]
        assert after == before

    def test_release_reduces_overbooking_first(self, make_config):
        config = make_config(overbooking_allowed=True, overbooking_limit=2)
        reserve(config, stay(D, D + timedelta(days=1), rooms=12), NOW)

        result = release(config, stay(D, D + timedelta(days=1), rooms=3), NOW)
        allocation = result.allocations[0]

        assert allocation.from_overbooking == 2
        assert allocation.sold == 9
        assert allocation.overbooking == 0
        assert allocation.available == 1

    def test_release_more_than_sold(self, make_config):
        config = make_config()
        reserve(config, stay(D, D + timedelta(days=1), rooms=1), NOW)

        with pytest.raises(InvariantViolationError) as exc:
            release(config, stay(D, D + timedelta(days=1), rooms=2), NOW)
        assert exc.value.invariant == "sold_non_negative"
        assert direct(config, D).sold == 1

    def test_release_ignores_stop_sell(self, make_config):
        config = make_config()
        reserve(config, stay(D, D + timedelta(days=1), rooms=2), NOW)
        direct(config, D).restrictions = Restrictions(stop_sell=True)

        release(config, stay(D, D + timedelta(days=1), rooms=2), NOW)
        assert direct(config, D).sold == 0

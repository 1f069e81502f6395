"""
tests/core/test_allotment_analytics.py

分析聚合、告警、建议与分配优化
"""
from datetime import date, datetime, timedelta, timezone

from core.allotment import analytics, recommendations
from core.allotment.daily_records import ChannelPatch, upsert_channel
from core.allotment.models import (
    Alert, AlertType, Analytics, CalculationFrequency, ChannelMetrics, MetricsWindow,
    RecommendationPriority, RecommendationType,
)

NOW = datetime(2023, 6, 3, 9, 0, tzinfo=timezone.utc)
D1 = date(2023, 6, 1)
D2 = date(2023, 6, 2)


def sold_config(make_config):
    """两天两个渠道：第一天入住率 70%，第二天 30%"""
    config = make_config(channels=("direct", "booking_com"),
                         allocations={"direct": 6, "booking_com": 4}, days=2)
    upsert_channel(config, D1, "direct", ChannelPatch(sold=3, rate=100.0), NOW)
    upsert_channel(config, D1, "booking_com", ChannelPatch(sold=4, rate=80.0), NOW)
    upsert_channel(config, D2, "direct", ChannelPatch(sold=3, rate=100.0), NOW)
    return config


def window_with(*metrics):
    return MetricsWindow(period_start=D1, period_end=D2, channel_metrics=list(metrics))


class TestComputeWindow:
    """指标窗口"""

    def test_channel_and_overall_metrics(self, make_config):
        config = sold_config(make_config)
        window = analytics.compute_window(config, D1, D2)

        direct = window.channel("direct")
        assert (direct.total_allocated, direct.total_sold, direct.total_revenue) == (12, 6, 600.0)
        assert direct.average_rate == 100.0
        assert direct.conversion_rate == direct.utilization_rate == 50.0
        assert direct.revenue_per_available_room == 50.0

        booking = window.channel("booking_com")
        assert booking.total_revenue == 320.0
        assert booking.average_rate == 80.0
        assert booking.revenue_per_available_room == 40.0

        overall = window.overall_metrics
        assert overall.total_inventory == 20
        assert overall.total_sold == 10
        assert overall.total_revenue == 920.0
        assert overall.average_occupancy_rate == 50.0
        assert overall.average_daily_rate == 92.0
        assert overall.revenue_per_available_room == 46.0

    def test_recompute_is_identical(self, make_config):
        config = sold_config(make_config)
        assert analytics.compute_window(config, D1, D2) == analytics.compute_window(config, D1, D2)

    def test_empty_range_reports_zeros(self, make_config):
        config = make_config()
        window = analytics.compute_window(config, date(2024, 1, 1), date(2024, 1, 31))

        assert window.overall_metrics.total_sold == 0
        assert window.overall_metrics.average_occupancy_rate == 0.0
        assert window.channel("direct").conversion_rate == 0.0

    def test_daily_breakdown(self, make_config):
        config = sold_config(make_config)
        rows = analytics.daily_breakdown(config, D1, D2)

        assert [r["date"] for r in rows] == ["2023-06-01", "2023-06-02"]
        assert rows[0]["total_revenue"] == 620.0
        assert rows[0]["occupancy_rate"] == 70.0


class TestWindowRetention:

    def test_windows_older_than_twelve_months_evicted(self):
        store = Analytics(windows=[
            MetricsWindow(period_start=date(2023, 6, 1), period_end=date(2023, 6, 14)),
            MetricsWindow(period_start=date(2023, 6, 1), period_end=date(2023, 6, 15)),
        ])
        analytics.add_window(store, MetricsWindow(period_start=date(2024, 6, 1), period_end=date(2024, 6, 14)),
                             today=date(2024, 6, 15))

        assert [w.period_end for w in store.windows] == [date(2023, 6, 15), date(2024, 6, 14)]

    def test_same_period_replaced(self):
        store = Analytics()
        first = MetricsWindow(period_start=D1, period_end=D2)
        second = MetricsWindow(period_start=D1, period_end=D2, channel_metrics=[ChannelMetrics("direct")])
        analytics.add_window(store, first, today=D2)
        analytics.add_window(store, second, today=D2)

        assert store.windows == [second]
        assert store.latest_window() is second

    def test_month_end_clamped(self):
        assert analytics._months_before(date(2024, 3, 31), 1) == date(2024, 2, 29)
        assert analytics._months_before(date(2024, 1, 15), 12) == date(2023, 1, 15)

    def test_next_calculation_by_frequency(self):
        assert analytics.next_calculation(NOW, CalculationFrequency.HOURLY) == NOW + timedelta(hours=1)
        assert analytics.next_calculation(NOW, CalculationFrequency.WEEKLY) == NOW + timedelta(days=7)

        store = Analytics()
        assert analytics.is_due(store, NOW)
        store.next_calculation = NOW + timedelta(minutes=1)
        assert not analytics.is_due(store, NOW)


class TestAlerts:
    """告警评估"""

    def test_evaluate_alerts(self, make_config):
        config = sold_config(make_config)
        config.analytics.alerts = [
            Alert(alert_type=AlertType.LOW_OCCUPANCY, threshold=60),
            Alert(alert_type=AlertType.HIGH_OCCUPANCY, threshold=95),
            Alert(alert_type=AlertType.CHANNEL_UNDERPERFORMING, threshold=55),
            Alert(alert_type=AlertType.INVENTORY_IMBALANCE, threshold=10),
            Alert(alert_type=AlertType.OVERBOOKING_RISK, threshold=70),
            Alert(alert_type=AlertType.LOW_OCCUPANCY, threshold=90, is_active=False),
        ]
        window = analytics.compute_window(config, D1, D2)

        triggered = analytics.evaluate_alerts(config, window, NOW)

        assert [a.alert_type for a in triggered] == [
            AlertType.LOW_OCCUPANCY, AlertType.CHANNEL_UNDERPERFORMING, AlertType.OVERBOOKING_RISK,
        ]
        assert all(a.last_triggered == NOW for a in triggered)
        assert config.analytics.alerts[1].last_triggered is None
        assert config.analytics.alerts[5].last_triggered is None


class TestRecommendations:
    """建议生成"""

    def test_generate(self):
        window = window_with(
            ChannelMetrics("direct", total_allocated=10, utilization_rate=50.0, conversion_rate=50.0),
            ChannelMetrics("booking_com", total_allocated=10, utilization_rate=95.0, conversion_rate=95.0),
            ChannelMetrics("expedia", total_allocated=10, utilization_rate=10.0, conversion_rate=10.0),
            ChannelMetrics("airbnb"),
        )
        result = recommendations.generate(window, NOW)

        assert [(r.channel_id, r.recommendation_type) for r in result] == [
            ("booking_com", RecommendationType.INCREASE_ALLOCATION),
            ("direct", RecommendationType.DECREASE_ALLOCATION),
            ("expedia", RecommendationType.DECREASE_ALLOCATION),
            ("expedia", RecommendationType.ADJUST_RATES),
        ]
        assert result[0].priority == RecommendationPriority.HIGH
        assert result[0].confidence == 85
        assert result[3].confidence == 70

    def test_no_window_no_recommendations(self):
        assert recommendations.generate(None, NOW) == []


class TestOptimize:
    """按收入生成优化规则"""

    def test_ranked_percentages(self, make_config):
        config = make_config(channels=("direct", "booking_com", "expedia"), allocations={})
        window = window_with(
            ChannelMetrics("direct", total_revenue=600.0),
            ChannelMetrics("booking_com", total_revenue=300.0),
            ChannelMetrics("expedia", total_revenue=100.0),
        )
        proposal = recommendations.optimize(config, window, NOW)

        assert proposal.rule.is_active is False
        assert proposal.rule.percentage == {"direct": 50.0, "booking_com": 30.0, "expedia": 20.0}
        assert proposal.ranking == ["direct", "booking_com", "expedia"]
        assert proposal.projected == {"direct": 5, "booking_com": 3, "expedia": 2}
        assert proposal.equal_share is False

    def test_second_channel_floor(self, make_config):
        config = make_config(channels=("direct", "booking_com"), allocations={})
        window = window_with(
            ChannelMetrics("direct", total_revenue=900.0),
            ChannelMetrics("booking_com", total_revenue=100.0),
        )
        proposal = recommendations.optimize(config, window, NOW)

        assert proposal.rule.percentage == {"direct": 50.0, "booking_com": 25.0}

    def test_without_revenue_proposes_equal_share(self, make_config):
        config = make_config(channels=("direct", "booking_com", "expedia"), allocations={})
        proposal = recommendations.optimize(config, window_with(), NOW)

        assert proposal.equal_share is True
        assert set(proposal.rule.percentage.values()) == {33.0}

    def test_single_channel_gets_everything(self, make_config):
        config = make_config()
        proposal = recommendations.optimize(config, window_with(ChannelMetrics("direct", total_revenue=10.0)), NOW)

        assert proposal.rule.percentage == {"direct": 100.0}
        assert proposal.projected == {"direct": 10}

"""
tests/core/test_allotment_channel_sync.py

渠道同步端口、外部更新与文档序列化
"""
import json
import pytest
from datetime import date, datetime, timezone

from core.allotment.channel_sync import (
    ChannelSyncPort, ExternalUpdate, apply_external_updates, backoff_delay, restrictions_payload,
)
from core.allotment.errors import AllotmentValidationError, InvariantViolationError
from core.allotment.models import AllocationRule, ChangeAction, Restrictions, RuleType
from core.allotment.change_log import entry_to_dict, make_entry
from core.allotment.serialization import config_from_dict, config_to_dict

NOW = datetime(2023, 6, 1, 9, 0, tzinfo=timezone.utc)


class RecordingPort(ChannelSyncPort):
    def __init__(self):
        self.calls = []

    def push_allocation(self, config, start, end):
        self.calls.append(("allocation", start, end))

    def push_rate(self, config, start, end):
        self.calls.append(("rate", start, end))

    def push_restrictions(self, config, start, end):
        self.calls.append(("restrictions", start, end))


class TestPort:
    """出站推送"""

    def test_push_dispatches_by_kind(self, make_config):
        port = RecordingPort()
        config = make_config()
        for kind in ("allocation", "rate", "restrictions"):
            port.push(kind, config, date(2023, 6, 1), date(2023, 6, 2))

        assert [c[0] for c in port.calls] == ["allocation", "rate", "restrictions"]

    def test_unknown_kind_rejected(self, make_config):
        with pytest.raises(ValueError):
            RecordingPort().push("inventory", make_config(), date(2023, 6, 1), date(2023, 6, 2))

    def test_blackout_pushed_as_stop_sell(self, make_config):
        config = make_config()
        config.daily_allotments.get(date(2023, 6, 2)).is_blackout = True
        rows = restrictions_payload(config, date(2023, 6, 1), date(2023, 6, 2))

        assert [r["stop_sell"] for r in rows] == [False, True]

    @pytest.mark.parametrize("attempt,expected", [(1, 30), (2, 60), (3, 120), (10, 600)])
    def test_backoff_delay(self, attempt, expected):
        assert backoff_delay(attempt, 30, 600) == expected


class TestExternalUpdates:
    """入站 webhook 更新"""

    def test_updates_applied(self, make_config):
        config = make_config(channels=("direct", "expedia"), allocations={"direct": 6, "expedia": 4})
        count = apply_external_updates(config, [
            ExternalUpdate(date=date(2023, 6, 2), channel_id="expedia", sold=2, rate=120.0),
            ExternalUpdate(date=date(2023, 6, 1), channel_id="expedia",
                           restrictions=Restrictions(stop_sell=True)),
        ], NOW)

        assert count == 2
        record = config.daily_allotments.get(date(2023, 6, 2))
        assert record.channel("expedia").available == 2
        assert record.channel("expedia").rate == 120.0
        assert config.daily_allotments.get(date(2023, 6, 1)).channel("expedia").restrictions.stop_sell

    def test_unknown_channel_rejected_before_any_change(self, make_config):
        config = make_config()
        with pytest.raises(AllotmentValidationError) as exc:
            apply_external_updates(config, [
                ExternalUpdate(date=date(2023, 6, 1), channel_id="direct", sold=1),
                ExternalUpdate(date=date(2023, 6, 1), channel_id="agoda", sold=1),
            ], NOW)

        assert exc.value.errors[0]["field"] == "updates[1].channel_id"
        assert config.daily_allotments.get(date(2023, 6, 1)).channel("direct").sold == 0

    def test_empty_updates_rejected(self, make_config):
        with pytest.raises(AllotmentValidationError):
            apply_external_updates(make_config(), [], NOW)

    def test_invariants_still_checked(self, make_config):
        config = make_config()
        with pytest.raises(InvariantViolationError):
            apply_external_updates(config, [
                ExternalUpdate(date=date(2023, 6, 1), channel_id="direct", sold=11),
            ], NOW)


class TestSerialization:
    """JSON 文档"""

    def test_document_survives_json(self, make_config):
        config = make_config(channels=("direct", "expedia"), allocations={"direct": 6, "expedia": 4})
        config.allocation_rules.append(AllocationRule(
            rule_id="r1", name="周末", rule_type=RuleType.PERCENTAGE, percentage={"direct": 60, "expedia": 40},
        ))
        config.daily_allotments.get(date(2023, 6, 1)).channel("direct").restrictions = Restrictions(stop_sell=True)

        document = json.loads(json.dumps(config_to_dict(config)))
        restored = config_from_dict(document)

        assert config_to_dict(restored) == document
        assert restored.daily_allotments.dates() == config.daily_allotments.dates()
        assert restored.allocation_rules[0].percentage == {"direct": 60.0, "expedia": 40.0}
        assert restored.created_at == NOW

    def test_unknown_keys_ignored(self, make_config):
        document = config_to_dict(make_config())
        document["channels"][0]["legacy_field"] = "x"

        assert config_from_dict(document).channels[0].channel_id == "direct"

    def test_change_log_entry(self):
        entry = make_entry(NOW, ChangeAction.UPDATED, "u-1", {"name": "新名称"}, reason="rename")
        assert entry_to_dict(entry) == {
            "timestamp": "2023-06-01T09:00:00+00:00",
            "action": "updated",
            "user_id": "u-1",
            "changes": {"name": "新名称"},
            "reason": "rename",
        }

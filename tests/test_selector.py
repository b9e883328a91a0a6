"""Tests for conditional message selection."""

from datetime import datetime

import pytest

from tmuxloop.selector import (
    COMPACT_SUFFIX,
    FINISH_SUFFIX,
    ConditionalMessageConfig,
    Signals,
    TimeWindowRule,
    select_message,
    select_rule,
)


def signals(hour: int = 10, **kwargs) -> Signals:
    return Signals(now=datetime(2025, 1, 6, hour, 30), **kwargs)


@pytest.fixture
def rules():
    config = ConditionalMessageConfig()
    config.on_idle.enabled = True
    config.low_context.enabled = True
    config.after_compact.enabled = True
    return config


class TestPriority:

    def test_idle_beats_low_context(self, rules):
        selection = select_rule(rules, signals(idle_seconds=120, context_percent=10))
        assert selection.kind == "on_idle"
        assert selection.priority == 1

    def test_idle_requires_threshold(self, rules):
        selection = select_rule(rules, signals(idle_seconds=5, context_percent=10))
        assert selection.kind == "low_context"

    def test_busy_is_never_idle(self, rules):
        selection = select_rule(rules, signals(idle_seconds=120, is_busy=True, context_percent=10))
        assert selection.kind == "low_context"

    def test_disabled_rule_does_not_block_lower_ones(self, rules):
        rules.on_idle.enabled = False
        selection = select_rule(rules, signals(idle_seconds=120, context_percent=10))
        assert selection.kind == "low_context"

    def test_after_compact_beats_low_context(self, rules):
        selection = select_rule(rules, signals(messages_since_compact=3, context_percent=10))
        assert selection.kind == "after_compact"

    def test_after_compact_threshold_inclusive(self, rules):
        rules.after_compact.messages_after_compact = 5
        assert select_rule(rules, signals(messages_since_compact=5)).kind == "after_compact"
        assert select_rule(rules, signals(messages_since_compact=6)) is None

    def test_no_compact_seen_yet(self, rules):
        assert select_rule(rules, signals(messages_since_compact=None)) is None


class TestLowContext:

    def test_unknown_percent_is_not_low(self, rules):
        assert select_rule(rules, signals(context_percent=None)) is None

    def test_threshold_inclusive(self, rules):
        assert select_rule(rules, signals(context_percent=30)).kind == "low_context"
        assert select_rule(rules, signals(context_percent=31)) is None

    def test_suffixes(self, rules):
        rules.low_context.auto_compact = True
        rules.low_context.auto_finish = True
        message = select_rule(rules, signals(context_percent=10)).message
        assert message == rules.low_context.message + COMPACT_SUFFIX + FINISH_SUFFIX
        assert "Let's compact!" in message


class TestTimeOfDay:

    @pytest.fixture
    def day_rules(self):
        config = ConditionalMessageConfig()
        config.morning.enabled = True
        config.afternoon.enabled = True
        config.evening.enabled = True
        return config

    @pytest.mark.parametrize("hour, kind", [(9, "morning"), (12, "afternoon"), (17, "afternoon"), (18, "evening")])
    def test_windows(self, day_rules, hour, kind):
        assert select_rule(day_rules, signals(hour=hour)).kind == kind

    def test_outside_all_windows(self, day_rules):
        assert select_rule(day_rules, signals(hour=23)) is None

    def test_wrapping_window(self):
        night = TimeWindowRule(enabled=True, start_hour=22, end_hour=6, message="night")
        assert night.contains(23) is True
        assert night.contains(2) is True
        assert night.contains(6) is False

    def test_long_session_beats_time_of_day(self, day_rules):
        day_rules.long_session.enabled = True
        selection = select_rule(day_rules, signals(hour=9, session_elapsed_hours=5))
        assert selection.kind == "long_session"


class TestFallbacks:

    def test_standard_message(self):
        rules = ConditionalMessageConfig()
        rules.standard.enabled = True
        selection = select_message(rules, signals(), custom_message="continue")
        assert selection.kind == "standard"

    def test_custom_message_when_no_rule_matches(self):
        selection = select_message(ConditionalMessageConfig(), signals(), custom_message="continue")
        assert selection.kind == "custom"
        assert selection.message == "continue"

    def test_no_rules_at_all(self):
        assert select_message(None, signals(), custom_message="continue").message == "continue"

    def test_nothing_to_send(self):
        assert select_message(None, signals(), custom_message="") is None


class TestConfigSerialization:

    def test_from_dict_merges_over_defaults(self):
        config = ConditionalMessageConfig.from_dict({
            "low_context": {"enabled": True, "threshold": 20, "unknown_key": 1},
            "morning": {"enabled": True},
        })
        assert config.low_context.enabled is True
        assert config.low_context.threshold == 20
        assert config.low_context.message.startswith("Please prepare to wrap up")
        assert config.morning.start_hour == 6
        assert config.on_idle.enabled is False

    def test_to_dict_roundtrip(self):
        config = ConditionalMessageConfig.from_dict({"on_idle": {"enabled": True, "idle_threshold_seconds": 45}})
        assert ConditionalMessageConfig.from_dict(config.to_dict()) == config

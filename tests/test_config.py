"""Tests for configuration loading, validation and per-session overrides."""

import pytest

from tmuxloop.config import (
    ConfigStore,
    DaemonConfig,
    SessionConfig,
    load_config,
    validate_config,
)
from tmuxloop.exceptions import ConfigurationError
from tmuxloop.schedule import MINUTES_PER_DAY, ScheduleConfig
from tmuxloop.selector import ConditionalMessageConfig


class TestLoadConfig:

    def test_full_config(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(f"""
poll_interval: 1.5
state_dir: {tmp_path}/state
rescan_url: http://localhost:3335/rescan
defaults:
  delay_minutes: 15
  custom_message: continue
sessions:
  claude:
    target: "work:1.0"
    schedule:
      enabled: true
      active: ["09:00-12:00"]
    conditional_messages:
      low_context: {{enabled: true, threshold: 20}}
  other:
    delay_minutes: 3
""")
        config = load_config(path)

        assert config.poll_interval == 1.5
        assert config.socket_path == tmp_path / "state" / "tmuxloop.sock"
        assert config.rescan_url == "http://localhost:3335/rescan"

        claude = config.sessions["claude"]
        assert claude.target == "work:1.0"
        assert claude.delay_minutes == 15
        assert claude.custom_message == "continue"
        assert claude.schedule.enabled is True
        assert claude.schedule.active_minutes() == 180
        assert claude.conditional_messages.low_context.threshold == 20

        other = config.sessions["other"]
        assert other.delay_minutes == 3
        assert other.target == "other:0.0"
        assert other.conditional_messages is None

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_missing_default_path_is_empty(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TMUXLOOP_CONFIG", str(tmp_path / "nope.yaml"))
        config = load_config()
        assert config.sessions == {}

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("sessions: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(path)

    def test_bad_schedule_range(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("sessions:\n  claude:\n    schedule: {enabled: true, active: ['9-17']}\n")
        with pytest.raises(ConfigurationError, match="Session claude"):
            load_config(path)

    def test_rescan_url_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("rescan_url: http://from-file\n")
        monkeypatch.setenv("TMUXLOOP_RESCAN_URL", "http://from-env")
        assert load_config(path).rescan_url == "http://from-env"


class TestValidateConfig:

    def test_valid_config_returns_warnings(self):
        config = DaemonConfig(sessions={"claude": SessionConfig(name="claude")})
        warnings = validate_config(config)
        assert any("will send nothing" in w for w in warnings)

    def test_all_errors_reported_together(self):
        session = SessionConfig(
            name="claude",
            delay_minutes=0,
            auto_compact_threshold=150,
            custom_message="continue",
        )
        config = DaemonConfig(sessions={"claude": session}, poll_interval=0)

        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(config)

        message = str(exc_info.value)
        assert "poll_interval" in message
        assert "delay_minutes" in message
        assert "auto_compact_threshold" in message

    def test_rule_thresholds_checked(self):
        rules = ConditionalMessageConfig.from_dict({"low_context": {"threshold": -1}})
        session = SessionConfig(name="claude", conditional_messages=rules)
        with pytest.raises(ConfigurationError, match="low_context.threshold"):
            validate_config(DaemonConfig(sessions={"claude": session}))

    def test_empty_schedule_warns(self):
        schedule = ScheduleConfig(enabled=True, minutes=[False] * MINUTES_PER_DAY)
        session = SessionConfig(name="claude", custom_message="continue", schedule=schedule)
        warnings = validate_config(DaemonConfig(sessions={"claude": session}))
        assert any("never send" in w for w in warnings)


class TestConfigStore:

    @pytest.fixture
    def store(self, tmp_path, sample_session):
        config = DaemonConfig(sessions={"claude": sample_session}, state_dir=tmp_path)
        return ConfigStore(config)

    def test_get_main_config_session(self, store):
        cfg = store.get("claude")
        assert cfg.custom_message == "continue"
        assert store.get("claude") is cfg

    def test_unknown_session_uses_defaults(self, store):
        cfg = store.get("fresh")
        assert cfg.target == "fresh:0.0"
        assert cfg.delay_minutes == 10

    def test_update_persists_override(self, store, tmp_path, sample_session):
        store.update("claude", delay_minutes=3)
        assert (tmp_path / "sessions" / "claude.yaml").exists()

        reloaded = ConfigStore(DaemonConfig(sessions={"claude": sample_session}, state_dir=tmp_path))
        cfg = reloaded.get("claude")
        assert cfg.delay_minutes == 3
        assert cfg.custom_message == "continue"

    def test_invalid_update_rejected(self, store, tmp_path):
        with pytest.raises(ConfigurationError):
            store.update("claude", delay_minutes=-1)
        assert not (tmp_path / "sessions" / "claude.yaml").exists()

    def test_on_save_only_when_auto_accept_enabled(self, tmp_path, sample_session):
        saved = []
        store = ConfigStore(DaemonConfig(sessions={"claude": sample_session}, state_dir=tmp_path), on_save=saved.append)

        store.update("claude", delay_minutes=3)
        assert saved == []
        store.update("claude", auto_accept_prompts=True)
        assert [s.name for s in saved] == ["claude"]

    def test_unreadable_override_ignored(self, store, tmp_path):
        (tmp_path / "sessions").mkdir()
        (tmp_path / "sessions" / "claude.yaml").write_text("delay_minutes: [oops\n")
        assert store.get("claude").delay_minutes == 10

    def test_names(self, store):
        store.update("second", custom_message="go on")
        assert store.names() == ["claude", "second"]

"""Tests for configuration models and the YAML configuration loader.

Feature: profile-sync
"""

from pathlib import Path

import pytest
import yaml
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

from profilesync.models.config import AppConfig, MixpanelConfig, SourceConfig
from profilesync.utils.config_loader import ConfigLoader, ConfigurationError
from tests.fakes import make_config

DEFAULT_CONFIG = Path(__file__).parent.parent / "config" / "default.yaml"

PROVIDER_ENV = {
    "MIXPANEL_PROJECT_ID": "987",
    "MIXPANEL_SERVICE_USERNAME": "svc",
    "MIXPANEL_SERVICE_SECRET": "s3cret",
}

column_names = st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=12)


def _write_yaml(path: Path, data: dict) -> str:
    path.write_text(yaml.safe_dump(data))
    return str(path)


def _provider_section() -> dict:
    return {"project_id": "1", "service_username": "u", "service_secret": "s"}


class TestConfigModels:
    """Validation rules of the configuration models."""

    @given(
        tracked=st.dictionaries(
            st.text(min_size=1, max_size=20), column_names.map(lambda c: f"cnt_{c}"), max_size=10
        )
    )
    @settings(max_examples=100)
    def test_counter_columns_are_unique_and_ordered(self, tracked: dict[str, str]):
        """Property: counter columns are the distinct mapped columns in declaration order.

        Several events may feed one counter column; the column appears once.
        """
        config = MixpanelConfig(
            project_id="1",
            service_username="u",
            service_secret="s",
            tracked_events=tracked,
            profile_properties={},
        )

        columns = config.counter_columns
        assert len(columns) == len(set(columns))
        assert set(columns) == set(tracked.values())
        assert columns == list(dict.fromkeys(tracked.values()))

    def test_column_cannot_be_counter_and_attribute(self):
        with pytest.raises(ValidationError, match="both counter and attribute"):
            MixpanelConfig(
                project_id="1",
                service_username="u",
                service_secret="s",
                tracked_events={"Signup": "income"},
                profile_properties={"income": "income"},
            )

    def test_stage_listed_twice_is_rejected(self):
        with pytest.raises(ValidationError, match="must not repeat"):
            SourceConfig(stages=["events", "events"])

    def test_unknown_stage_is_rejected(self):
        with pytest.raises(ValidationError):
            SourceConfig(stages=["events", "dashboards"])

    def test_defaults_match_documented_values(self):
        config = AppConfig(provider=_provider_section())

        assert config.sync.overlap_hours == 2.0
        assert config.sync.cold_start_days == 45
        assert config.sync.backfill_days == 60
        assert config.sync.backfill_chunk_days == 15
        assert config.storage.batch_size == 250
        assert config.sources["mixpanel_users"].stages == ["events", "properties", "aggregates"]

    def test_batch_size_is_bounded(self):
        with pytest.raises(ValidationError):
            AppConfig(provider=_provider_section(), storage={"batch_size": 5000})


class TestConfigLoader:
    """Loading YAML files with environment variable substitution."""

    def test_default_config_loads_with_provider_env(self, monkeypatch):
        for name, value in PROVIDER_ENV.items():
            monkeypatch.setenv(name, value)

        config = ConfigLoader().load_config(str(DEFAULT_CONFIG))

        assert config.provider.project_id == "987"
        assert config.provider.service_secret == "s3cret"
        assert config.sync.retry.max_delay == 30.0
        assert list(config.sources) == ["mixpanel_users"]

    def test_missing_env_var_raises(self, monkeypatch):
        for name in PROVIDER_ENV:
            monkeypatch.delenv(name, raising=False)

        with pytest.raises(ConfigurationError, match="MIXPANEL_PROJECT_ID"):
            ConfigLoader().load_config(str(DEFAULT_CONFIG))

    def test_env_var_substituted_inside_string(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DB_HOST", "db.internal")
        path = _write_yaml(
            tmp_path / "config.yaml",
            {
                "provider": _provider_section(),
                "storage": {"database_url": "postgresql://sync@${DB_HOST}:5432/profiles"},
            },
        )

        config = ConfigLoader().load_config(path)

        assert config.storage.database_url == "postgresql://sync@db.internal:5432/profiles"

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            ConfigLoader().load_config(str(tmp_path / "absent.yaml"))

    def test_empty_file_raises(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        with pytest.raises(ConfigurationError, match="empty"):
            ConfigLoader().load_config(str(path))

    def test_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("provider: [unclosed")

        with pytest.raises(ConfigurationError, match="parse"):
            ConfigLoader().load_config(str(path))

    def test_validation_error_is_wrapped(self, tmp_path):
        path = _write_yaml(tmp_path / "config.yaml", {"provider": {"project_id": "1"}})

        with pytest.raises(ConfigurationError, match="validation failed"):
            ConfigLoader().load_config(path)

    def test_app_env_selects_config_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PROFILESYNC_CONFIG", raising=False)
        monkeypatch.setenv("APP_ENV", "definitely-not-an-environment")
        for name, value in PROVIDER_ENV.items():
            monkeypatch.setenv(name, value)

        # unknown environments fall back to default.yaml
        config = ConfigLoader().load_config()

        assert config.provider.project_id == "987"


    def test_default_placeholder_used_when_unset(self, monkeypatch):
        for name, value in PROVIDER_ENV.items():
            monkeypatch.setenv(name, value)
        monkeypatch.delenv("PROFILESYNC_DATABASE_URL", raising=False)

        config = ConfigLoader().load_config(str(DEFAULT_CONFIG))

        assert config.storage.database_url == "sqlite:///./data/profiles.db"

    def test_environment_overrides_placeholder_default(self, monkeypatch):
        for name, value in PROVIDER_ENV.items():
            monkeypatch.setenv(name, value)
        monkeypatch.setenv("PROFILESYNC_DATABASE_URL", "sqlite:///:memory:")

        config = ConfigLoader().load_config(str(DEFAULT_CONFIG))

        assert config.storage.database_url == "sqlite:///:memory:"

    def test_explicit_config_path_from_environment(self, tmp_path, monkeypatch):
        path = _write_yaml(tmp_path / "cron.yaml", {"provider": _provider_section()})
        monkeypatch.setenv("PROFILESYNC_CONFIG", path)

        config = ConfigLoader().load_config()

        assert list(config.sources) == ["mixpanel_users"]

    def test_explicit_config_path_must_exist(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROFILESYNC_CONFIG", str(tmp_path / "absent.yaml"))

        with pytest.raises(ConfigurationError, match="PROFILESYNC_CONFIG"):
            ConfigLoader().load_config()

class TestConfigWarnings:
    """Non-fatal warnings returned by validate_config."""

    def test_sane_config_has_no_warnings(self):
        assert ConfigLoader().validate_config(make_config()) == []

    def test_chunk_larger_than_range_warns(self):
        config = make_config(backfill_days=10, backfill_chunk_days=15)

        warnings = ConfigLoader().validate_config(config)

        assert any("single chunk" in w for w in warnings)

    def test_overlap_covering_cold_start_warns(self):
        config = make_config(overlap_hours=24 * 3, cold_start_days=2)

        warnings = ConfigLoader().validate_config(config)

        assert any("cold start window" in w for w in warnings)

    def test_source_without_events_stage_warns(self):
        config = make_config(["properties", "aggregates"])

        warnings = ConfigLoader().validate_config(config)

        assert any("no events stage" in w for w in warnings)

    def test_aggregates_before_merge_stages_warns(self):
        config = make_config(["aggregates", "events", "properties"])

        warnings = ConfigLoader().validate_config(config)

        assert any("before events, properties" in w for w in warnings)

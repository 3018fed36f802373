"""
Unit tests for configuration loading and validation.

Tests cover:
- YAML and JSON configuration files
- Environment variable overrides
- Poller entries
- Validation failures
"""

import json
from unittest.mock import patch

import pytest

from dbstream.config import (
    AppConfig,
    ConfigLoader,
    ConfigValidator,
    ConsumerConfig,
    DEFAULT_CONFIG_JSON,
    DEFAULT_CONFIG_YAML,
    KafkaConfig,
    PollerConfig,
    PollerMode,
    load_configuration,
    mask_connection_string,
    validate_configuration,
)
from dbstream.core import ConfigurationError


CONFIG_YAML = """
environment: production
kafka:
  bootstrap_servers:
    - kafka-1:9092
    - kafka-2:9092
  group_id: widgets-sink
database:
  url: "sqlite+aiosqlite:///:memory:"
consumer:
  topics: [widgets]
  batch_size: 200
  max_db_batch_size: 50
pollers:
  - producer_class: support_models.EventProducer
    run_every: 30
  - producer_class: support_models.PendingEventProducer
    mode: state_based
    state_column: publish_status
    published_state: PUBLISHED
"""


@pytest.fixture
def clean_env(monkeypatch):
    """Remove environment overrides the loader would pick up."""
    from dbstream.config.loader import ENV_MAPPINGS
    for name in ENV_MAPPINGS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "dbstream.yaml"
    path.write_text(CONFIG_YAML)
    return path


@pytest.mark.unit
class TestConfigLoader:
    """Test cases for ConfigLoader."""

    def test_loads_yaml(self, clean_env, config_file):
        config = ConfigLoader().load_config(config_file)

        assert config.environment.value == "production"
        assert config.kafka.bootstrap_servers == ["kafka-1:9092", "kafka-2:9092"]
        assert config.kafka.group_id == "widgets-sink"
        assert config.consumer.topics == ["widgets"]
        assert config.consumer.batch_size == 200
        assert config.consumer.max_db_batch_size == 50
        # Untouched settings keep their defaults
        assert config.consumer.deadlock_retries == 2

    def test_loads_pollers(self, clean_env, config_file):
        config = ConfigLoader().load_config(config_file)

        time_based, state_based = config.pollers
        assert time_based.mode == PollerMode.TIME_BASED
        assert time_based.run_every == 30
        assert state_based.mode == PollerMode.STATE_BASED
        assert state_based.state_column == "publish_status"

    def test_loads_json(self, clean_env, tmp_path):
        path = tmp_path / "dbstream.json"
        path.write_text(json.dumps({"consumer": {"topics": ["a", "b"], "compacted": True}}))

        config = ConfigLoader().load_config(path)

        assert config.consumer.topics == ["a", "b"]
        assert config.consumer.compacted is True

    def test_environment_overrides_file(self, clean_env, config_file):
        clean_env.setenv("CONSUMER_BATCH_SIZE", "42")
        clean_env.setenv("KAFKA_BOOTSTRAP_SERVERS", "broker-a:9092,broker-b:9092")
        clean_env.setenv("CONSUMER_COMPACTED", "true")
        clean_env.setenv("CONSUMER_MAX_DB_BATCH_SIZE", "none")

        config = ConfigLoader().load_config(config_file)

        assert config.consumer.batch_size == 42
        assert config.kafka.bootstrap_servers == ["broker-a:9092", "broker-b:9092"]
        assert config.consumer.compacted is True
        assert config.consumer.max_db_batch_size is None

    def test_missing_explicit_file(self, clean_env, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_config(tmp_path / "absent.yaml")

    def test_unknown_section_key(self, clean_env, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("consumer:\n  batch_sise: 10\n")

        with pytest.raises(ConfigurationError, match="batch_sise"):
            ConfigLoader().load_config(path)

    def test_database_schema_is_not_a_setting(self, clean_env, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("database:\n  schema: audit\n")

        with pytest.raises(ConfigurationError, match="schema"):
            ConfigLoader().load_config(path)

    def test_unknown_poller_key(self, clean_env, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("pollers:\n  - producer_class: a.B\n    every: 5\n")

        with pytest.raises(ConfigurationError, match="every"):
            ConfigLoader().load_config(path)

    def test_invalid_yaml(self, clean_env, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("consumer: [unclosed\n")

        with pytest.raises(ConfigurationError):
            ConfigLoader().load_config(path)

    def test_duplicate_pollers_rejected(self, clean_env, tmp_path):
        path = tmp_path / "dup.yaml"
        path.write_text(
            "pollers:\n"
            "  - producer_class: a.B\n"
            "  - producer_class: a.B\n"
        )

        with pytest.raises(ConfigurationError, match="a.B"):
            ConfigLoader().load_config(path)


@pytest.mark.unit
class TestSettingsValidation:
    """Test cases for dataclass validation."""

    def test_state_based_needs_state_column(self):
        config = PollerConfig(producer_class="a.B", mode=PollerMode.STATE_BASED)

        with pytest.raises(ConfigurationError):
            config.validate()

    def test_poller_needs_producer(self):
        with pytest.raises(ConfigurationError):
            PollerConfig().validate()

    @pytest.mark.parametrize("values", [
        {"batch_size": 0},
        {"max_db_batch_size": 0},
        {"deadlock_retries": -1},
    ])
    def test_consumer_limits(self, values):
        with pytest.raises(ConfigurationError):
            ConsumerConfig(**values).validate()

    def test_consumer_env(self, clean_env):
        clean_env.setenv("CONSUMER_TOPICS", "a, b,,c")
        clean_env.setenv("CONSUMER_NO_KEYS", "yes")

        config = ConsumerConfig.from_env()

        assert config.topics == ["a", "b", "c"]
        assert config.no_keys is True

    def test_kafka_settings(self):
        settings = KafkaConfig(bootstrap_servers=["a:1", "b:2"], group_id="g").consumer_settings()

        assert settings["bootstrap.servers"] == "a:1,b:2"
        assert settings["enable.auto.commit"] is False
        assert settings["group.id"] == "g"


@pytest.mark.unit
class TestConfigValidator:
    """Test cases for ConfigValidator."""

    def test_mask_connection_string(self):
        masked = mask_connection_string("postgresql://admin:secret@db:5432/app")

        assert "secret" not in masked
        assert masked == "postgresql://***:***@db:5432/app"

    async def test_database_check_passes_on_sqlite(self, clean_env):
        config = AppConfig()
        config.database.url = "sqlite+aiosqlite:///:memory:"

        result = await ConfigValidator(config).validate_database()

        assert result["status"] == "healthy"

    async def test_database_check_requires_checkpoint_table(self, clean_env):
        config = AppConfig(pollers=[PollerConfig(producer_class="support_models.EventProducer")])
        config.database.url = "sqlite+aiosqlite:///:memory:"

        result = await ConfigValidator(config).validate_database()

        assert result["status"] == "failed"

    def test_poller_classes_are_resolved(self, clean_env):
        config = AppConfig(pollers=[
            PollerConfig(producer_class="support_models.EventProducer"),
            PollerConfig(producer_class="support_models.NotAProducer"),
        ])

        result = ConfigValidator(config).validate_pollers()

        assert result["status"] == "failed"
        assert "support_models.NotAProducer" in str(result)

    def test_kafka_check_reports_missing_topics(self, clean_env):
        config = AppConfig()
        config.consumer.topics = ["widgets", "gone"]
        metadata = type("Metadata", (), {"topics": {"widgets": object()}})()

        with patch("dbstream.config.validator.Consumer") as consumer_cls:
            consumer_cls.return_value.list_topics.return_value = metadata
            result = ConfigValidator(config).validate_kafka()

        assert result["status"] == "warning"
        assert result["missing_topics"] == ["gone"]

    async def test_validate_configuration_reports_failed_components(self, clean_env):
        config = AppConfig(pollers=[PollerConfig(producer_class="support_models.NotAProducer")])
        config.database.url = "sqlite+aiosqlite:///:memory:"

        with patch("dbstream.config.validator.Consumer") as consumer_cls:
            consumer_cls.return_value.list_topics.return_value = type("Metadata", (), {"topics": {}})()
            results = await validate_configuration(config)

        assert results["overall_status"] == "unhealthy"
        assert "pollers" in results["failed_components"]
        assert "database" in results["failed_components"]


@pytest.mark.unit
class TestDefaultTemplates:
    """The shipped configuration templates load as-is."""

    @pytest.mark.parametrize("name, template", [
        ("dbstream.yaml", DEFAULT_CONFIG_YAML),
        ("dbstream.json", DEFAULT_CONFIG_JSON),
    ])
    def test_template_loads(self, clean_env, tmp_path, name, template):
        path = tmp_path / name
        path.write_text(template)

        config = load_configuration(path)

        assert config.consumer.topics == ["widgets"]
        assert [p.mode for p in config.pollers] == [PollerMode.TIME_BASED, PollerMode.STATE_BASED]
        assert config.to_dict()["pollers"][1] == {
            "producer_class": "myapp.producers.OrderProducer",
            "mode": "state_based",
        }

"""Tests for configuration loading and validation."""

import pytest

from csv_job_orchestrator.core.exceptions import ConfigurationError
from csv_job_orchestrator.utils.config import OrchestratorConfig, load_config


class TestOrchestratorConfig:
    """Test defaults and validation."""

    def test_defaults_are_valid(self):
        config = OrchestratorConfig().validate()
        assert config.max_retry_attempts == 3
        assert config.lease_renew_interval == pytest.approx(100.0)

    @pytest.mark.parametrize("options", [
        {"max_chunk_size": 0},
        {"max_concurrent_chunks": -1},
        {"chunk_timeout": 0},
        {"backoff_jitter": 1.5},
        {"backoff_base": 10.0, "backoff_max": 5.0},
        {"log_level": "LOUD"},
    ])
    def test_invalid_values(self, options):
        with pytest.raises(ConfigurationError):
            OrchestratorConfig(**options).validate()

    def test_from_dict_coerces_strings(self):
        config = OrchestratorConfig.from_dict({"max_chunk_size": "250", "chunk_timeout": "12.5"})
        assert config.max_chunk_size == 250
        assert config.chunk_timeout == 12.5

    def test_unknown_option(self):
        with pytest.raises(ConfigurationError) as exc_info:
            OrchestratorConfig.from_dict({"max_chunks": 5})
        assert exc_info.value.details["config_key"] == "max_chunks"

    def test_bad_number(self):
        with pytest.raises(ConfigurationError):
            OrchestratorConfig.from_dict({"max_chunk_size": "many"})


class TestLoadConfig:
    """Test layering of file, environment and overrides."""

    def test_precedence(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("max_chunk_size: 500\nmax_concurrent_chunks: 4\nlog_level: DEBUG\n")
        environ = {"CJO_MAX_CONCURRENT_CHUNKS": "8", "CJO_MAX_CHUNK_SIZE": "250", "HOME": "/root"}

        config = load_config(path, environ=environ, max_chunk_size=100, chunk_timeout=None)

        assert config.max_chunk_size == 100
        assert config.max_concurrent_chunks == 8
        assert config.log_level == "DEBUG"
        assert config.chunk_timeout == 900.0

    def test_environment_only(self):
        config = load_config(environ={"CJO_DATABASE_URL": "postgresql://localhost/jobs"})
        assert config.database_url == "postgresql://localhost/jobs"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "absent.yaml", environ={})

    def test_file_must_be_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            load_config(path, environ={})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("max_chunk_size: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(path, environ={})

    def test_round_trip(self):
        config = OrchestratorConfig(max_chunk_size=42, database_url="postgresql://db")
        assert OrchestratorConfig.from_dict(config.to_dict()) == config

"""
Unit tests for settings loading and the pseudonymization key provider.
"""

import pytest

from src.core.config import PipelineSettings, SecretProvider, load_secret_key
from src.core.errors import ConfigurationError

_ENV_VARS = [
    "DB_HOST", "DB_PASSWORD", "STATE_DB_NAME", "WAREHOUSE_DB_NAME", "WAREHOUSE_DB_HOST",
    "WAREHOUSE_TABLE", "RETRY_MAX_ATTEMPTS", "RETRY_BASE_DELAY_SECONDS", "RETRY_MAX_DELAY_SECONDS",
    "REPROCESS_PAGE_SIZE", "REPROCESS_MAX_SWEEPS", "TRANSPORT", "WORKER_PARTITIONS", "METRICS_PORT",
    "FIELD_POLICY_PATH",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestPipelineSettings:
    """Tests for PipelineSettings.from_env"""

    def test_defaults(self):
        settings = PipelineSettings.from_env()

        assert settings.state_db.database == "sync_state"
        assert settings.warehouse_db.database == "datawarehouse"
        assert settings.warehouse_table == "activity_records"
        assert settings.retry.max_attempts == 10
        assert settings.retry.max_delay_seconds == 300
        assert settings.reprocess.max_attempts == 3
        assert settings.worker.transport == "postgres"
        assert settings.field_policy_path is None

    def test_overrides_and_shared_fallback(self, monkeypatch):
        monkeypatch.setenv("DB_HOST", "db.internal")
        monkeypatch.setenv("WAREHOUSE_DB_HOST", "warehouse.internal")
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("TRANSPORT", "kafka")
        monkeypatch.setenv("WORKER_PARTITIONS", "8")

        settings = PipelineSettings.from_env()

        assert settings.state_db.host == "db.internal"
        assert settings.warehouse_db.host == "warehouse.internal"
        assert settings.retry.max_attempts == 5
        assert settings.worker.transport == "kafka"
        assert settings.worker.partitions == 8

    @pytest.mark.parametrize(
        "name,value",
        [
            ("RETRY_MAX_ATTEMPTS", "0"),
            ("RETRY_MAX_ATTEMPTS", "ten"),
            ("RETRY_MAX_DELAY_SECONDS", "0.5"),
            ("TRANSPORT", "carrier-pigeon"),
            ("WAREHOUSE_TABLE", "rows; DROP TABLE x"),
            ("REPROCESS_PAGE_SIZE", "-1"),
            ("REPROCESS_TIME_BUDGET_SECONDS", "900"),
        ],
    )
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ConfigurationError):
            PipelineSettings.from_env()

    def test_env_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("REPROCESS_MAX_SWEEPS=7\nMETRICS_PORT=9100\n")

        try:
            settings = PipelineSettings.from_env(env_file)
        finally:
            # load_dotenv writes into os.environ directly
            monkeypatch.delenv("REPROCESS_MAX_SWEEPS", raising=False)
            monkeypatch.delenv("METRICS_PORT", raising=False)

        assert settings.reprocess.max_reprocess_sweeps == 7
        assert settings.metrics_port == 9100

    def test_env_file_does_not_override_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WORKER_PARTITIONS", "2")
        env_file = tmp_path / ".env"
        env_file.write_text("WORKER_PARTITIONS=16\n")

        assert PipelineSettings.from_env(env_file).worker.partitions == 2


class TestSecretProvider:
    """Tests for key loading"""

    def test_key_from_env(self):
        assert SecretProvider({"PSEUDONYMIZATION_KEY": "k" * 32}).get_key() == b"k" * 32

    def test_key_file_preferred(self, tmp_path):
        key_file = tmp_path / "key"
        key_file.write_bytes(b"file-key-0123456789abcdef\n")

        key = load_secret_key({"PSEUDONYMIZATION_KEY_FILE": str(key_file), "PSEUDONYMIZATION_KEY": "env"})

        assert key == b"file-key-0123456789abcdef"

    @pytest.mark.parametrize("environ", [{}, {"PSEUDONYMIZATION_KEY": "   "}])
    def test_missing_key(self, environ):
        with pytest.raises(ConfigurationError):
            SecretProvider(environ).get_key()

    def test_unreadable_key_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            SecretProvider({"PSEUDONYMIZATION_KEY_FILE": str(tmp_path / "missing")}).get_key()

    def test_empty_key_file(self, tmp_path):
        key_file = tmp_path / "key"
        key_file.write_bytes(b"\n")

        with pytest.raises(ConfigurationError):
            SecretProvider({"PSEUDONYMIZATION_KEY_FILE": str(key_file)}).get_key()

"""Tests for configuration loading."""

import pytest

from report_job_orchestrator.core.config import DATABASE_URL_ENV, OrchestratorConfig, load_config
from report_job_orchestrator.core.exceptions import ConfigurationError
from report_job_orchestrator.core.orchestrator import ReportOrchestrator, load_schema_sql
from report_job_orchestrator.utils.database import DatabaseManager, InMemoryDatabaseManager


CONFIG_YAML = """
dispatcher:
  max_concurrent_jobs: 2
retry:
  base_delay: 1.5
storage:
  base_dir: /var/reports
  retention_hours: 24
report_types:
  - name: learner-activity
    data_source: conftest:sample_source
    formats: [csv]
    max_retries: 5
"""


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "orchestrator.yaml"
    path.write_text(CONFIG_YAML)

    config = load_config(path, env={})

    assert config.database_url is None
    assert config.dispatcher.max_concurrent_jobs == 2
    assert config.retry.base_delay == 1.5
    assert config.retry.multiplier == 2.0
    assert config.storage.retention_hours == 24
    assert config.worker.lease_timeout == 60.0
    assert config.report_types[0].max_retries == 5
    assert config.report_types[0].batch_size == 500


def test_database_url_from_environment(tmp_path):
    path = tmp_path / "orchestrator.yaml"
    path.write_text("database_url: postgresql://file/reports\n")

    config = load_config(path, env={DATABASE_URL_ENV: "postgresql://env/reports"})
    assert config.database_url == "postgresql://env/reports"

    assert load_config(env={}).database_url is None


@pytest.mark.parametrize("content", [
    "dispatcher: [unclosed",
    "- just\n- a list\n",
    "dispatcher:\n  max_concurrent_jobs: 0\n",
    "unknown_section: true\n",
])
def test_invalid_config_files(tmp_path, content):
    path = tmp_path / "orchestrator.yaml"
    path.write_text(content)
    with pytest.raises(ConfigurationError):
        load_config(path, env={})


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc_info:
        load_config(tmp_path / "absent.yaml", env={})
    assert exc_info.value.error_code == "CONFIGURATION_ERROR"


def test_from_dict_reports_offending_key():
    with pytest.raises(ConfigurationError) as exc_info:
        OrchestratorConfig.from_dict({"retry": {"multiplier": 0.5}})
    assert exc_info.value.details["config_key"] == "retry.multiplier"


def test_store_selection():
    assert isinstance(ReportOrchestrator().db, InMemoryDatabaseManager)
    configured = ReportOrchestrator(OrchestratorConfig(database_url="postgresql://localhost/reports"))
    assert isinstance(configured.db, DatabaseManager)


def test_report_types_built_from_config():
    config = OrchestratorConfig.from_dict({
        "report_types": [{"name": "learner-activity", "data_source": "conftest:sample_source", "formats": ["csv"]}]
    })
    orchestrator = ReportOrchestrator(config)
    assert orchestrator.registry.names() == ["learner-activity"]
    assert not orchestrator.registry.get("learner-activity").supports_format("json")


def test_schema_sql_is_packaged():
    sql = load_schema_sql()
    assert "CREATE TABLE IF NOT EXISTS report_jobs" in sql
    assert "report_schedules" in sql

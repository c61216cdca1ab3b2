"""
Tests for configuration and structured logging
"""

import json
import logging
import sys
from types import SimpleNamespace

import pytest
from pydantic import ValidationError as SettingsValidationError

from compliance_workflows import config as config_module
from compliance_workflows.config import WorkflowConfig, get_config, reload_config
from compliance_workflows.definitions import EntityType
from compliance_workflows.instances import WorkflowStatus
from compliance_workflows.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestWorkflowConfig:
    """Test environment-driven configuration"""

    def test_defaults(self, monkeypatch):
        for key in ["WORKFLOW_DATABASE_URL", "WORKFLOW_REQUIRE_DEFINITION", "WORKFLOW_NOTIFICATION_WEBHOOK_URL"]:
            monkeypatch.delenv(key, raising=False)
        config = WorkflowConfig()

        assert config.database_url == "memory://"
        assert config.require_definition is False
        assert config.enable_audit_hash_chain is True
        assert config.notification_webhook_url == ""
        assert config.sla_warning_threshold_percent == 80.0
        assert config.sla_critical_hours == 24.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_DATABASE_URL", "sqlite:///approvals.db")
        monkeypatch.setenv("WORKFLOW_REQUIRE_DEFINITION", "true")
        monkeypatch.setenv("workflow_log_level", "DEBUG")

        config = WorkflowConfig()
        assert config.database_url == "sqlite:///approvals.db"
        assert config.require_definition is True
        assert config.log_level == "DEBUG"

    def test_invalid_threshold(self):
        with pytest.raises(SettingsValidationError):
            WorkflowConfig(sla_warning_threshold_percent=150)

    def test_reload_config(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("WORKFLOW_SLA_CRITICAL_HOURS", "48")
        try:
            reloaded = reload_config()
            assert reloaded.sla_critical_hours == 48.0
            assert get_config() is reloaded
        finally:
            config_module.config = original


class TestLogging:
    """Test structured log output"""

    @pytest.fixture
    def logger(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("INFO", logger_name="compliance_workflows_test", log_file=str(log_file))
        yield logger, log_file
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_log_action_structured_fields(self, logger):
        logger, log_file = logger
        log_action(logger, "info", "Workflow approved", actor_id="cco", event="decision_approve",
                   step_sequence=0, revision=3)

        entry = json.loads(log_file.read_text().strip())
        assert entry["message"] == "Workflow approved"
        assert entry["level"] == "INFO"
        assert entry["actor_id"] == "cco"
        assert entry["event"] == "decision_approve"
        assert entry["step_sequence"] == 0
        assert entry["details"] == {"revision": 3}
        assert "instance_id" not in entry

    def test_workflow_fields_from_instance(self, logger):
        logger, log_file = logger
        instance = SimpleNamespace(id="wf-1", entity_type=EntityType.POLICY, entity_id="pol-1",
                                   status=WorkflowStatus.APPROVED)
        log_action(logger, "info", "Workflow approved", instance=instance)

        entry = json.loads(log_file.read_text().strip())
        assert entry["instance_id"] == "wf-1"
        assert entry["entity"] == "POLICY:pol-1"
        assert entry["status"] == "APPROVED"
        assert "details" not in entry

    def test_disabled_level_is_skipped(self, logger):
        logger, log_file = logger
        log_action(logger, "debug", "noise")
        assert log_file.read_text() == ""

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "text.log"
        logger = setup_logging("WARNING", logger_name="compliance_workflows_text", log_format="text",
                               log_file=str(log_file))
        logger.warning("Ledger integrity check failed")
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

        assert "WARNING compliance_workflows_text: Ledger integrity check failed" in log_file.read_text()

    def test_json_formatter_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]

    def test_get_logger(self):
        assert get_logger().name == "compliance_workflows"

    def test_engine_configures_package_logger(self, tmp_path):
        from compliance_workflows.engine import WorkflowEngine
        from compliance_workflows.storage import InMemoryStorage

        log_file = tmp_path / "engine.log"
        config = WorkflowConfig(log_level="WARNING", log_format="json", log_file=str(log_file))
        logger = WorkflowEngine(storage=InMemoryStorage(), config=config).configure_logging()
        try:
            assert logger.name == "compliance_workflows"
            assert logger.level == logging.WARNING
            logging.getLogger("compliance_workflows.decisions").warning("Unauthorized action")
            assert json.loads(log_file.read_text())["logger"] == "compliance_workflows.decisions"
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)
            logger.setLevel(logging.NOTSET)
            logger.propagate = True

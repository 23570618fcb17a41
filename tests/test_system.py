"""
Tests for configuration, structured logging and system wiring
"""

import json
import logging

from workflow_core.actions import HttpActionExecutor, LoggingActionExecutor
from workflow_core.config import WorkflowConfig, reload_config
from workflow_core.events import DomainEvent
from workflow_core.logging_config import JSONFormatter, log_action, setup_logging
from workflow_core.models import StepKind, WorkflowGraph, WorkflowNode, WorkflowStatus
from workflow_core.storage import InMemoryStorage
from workflow_core.system import WorkflowSystem


def memory_config(**overrides):
    settings = dict(storage_backend="memory", enable_sla_scheduler=False)
    settings.update(overrides)
    return WorkflowConfig(**settings)


class TestConfiguration:

    def test_defaults(self):
        config = WorkflowConfig()

        assert config.conflict_retries == 1
        assert config.default_approval_due_hours == 48
        assert config.jwt_algorithm == "HS256"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_API_PORT", "9001")
        monkeypatch.setenv("WORKFLOW_AUTH_ENABLED", "false")

        config = reload_config()

        assert config.api_port == 9001
        assert config.auth_enabled is False
        monkeypatch.delenv("WORKFLOW_API_PORT")
        monkeypatch.delenv("WORKFLOW_AUTH_ENABLED")
        reload_config()


class TestStructuredLogging:

    def test_json_formatter(self):
        record = logging.LogRecord("workflow.engine", logging.INFO, __file__, 1, "hello", (), None)
        record.user_id = "alice"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "hello"
        assert entry["logger"] == "workflow.engine"
        assert entry["user_id"] == "alice"
        assert "correlation_id" not in entry

    def test_log_action_attaches_fields(self):
        logger = logging.getLogger("workflow.test_log_action")
        records = []
        handler = logging.Handler()
        handler.emit = records.append
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

        log_action(logger, "info", "Approved", user_id="bob", action="decide_approval",
                   resource="approval:1", instance_id="i1", step_id="s1", extra={"comments": "ok"})

        logger.removeHandler(handler)
        assert records[0].action == "decide_approval"
        assert records[0].resource == "approval:1"
        assert records[0].instance_id == "i1"
        assert records[0].step_id == "s1"
        assert records[0].extra == {"comments": "ok"}
        assert not hasattr(records[0], "correlation_id")

    def test_json_formatter_includes_workflow_context(self):
        record = logging.LogRecord("workflow.approvals", logging.INFO, __file__, 1, "decided", (), None)
        record.instance_id = "i1"
        record.step_id = "s1"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["instance_id"] == "i1"
        assert entry["step_id"] == "s1"

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging("DEBUG", "text", logger_name="workflow.test_setup")
        logger = setup_logging("WARNING", "json", logger_name="workflow.test_setup")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.WARNING


class TestWorkflowSystem:

    def test_components_share_storage_and_events(self):
        system = WorkflowSystem(config=memory_config(), storage=InMemoryStorage())
        received = []
        system.events.subscribe(DomainEvent.INSTANCE_COMPLETED, received.append)

        definition = system.definitions.create_definition(
            "Ping", "ops", WorkflowGraph(nodes=[WorkflowNode(id="t", kind=StepKind.TASK, label="T")]), "owner"
        )
        instance = system.engine.create_instance(definition.id, initiated_by="alice")
        instance = system.engine.start_instance(instance.id)

        assert instance.status == WorkflowStatus.COMPLETED
        assert [e.entity_id for e in received] == [instance.id]
        assert system.audit_trail.verify_integrity()["valid"]
        system.shutdown()

    def test_log_only_actions_by_default(self):
        system = WorkflowSystem(config=memory_config(), storage=InMemoryStorage())
        assert isinstance(system.actions, LoggingActionExecutor)

    def test_http_actions_when_service_configured(self):
        system = WorkflowSystem(config=memory_config(action_service_url="http://actions.local"),
                                storage=InMemoryStorage())

        assert isinstance(system.actions, HttpActionExecutor)
        assert system.actions.base_url == "http://actions.local"
        system.shutdown()

    def test_audit_can_be_disabled(self):
        system = WorkflowSystem(config=memory_config(enable_audit_logging=False), storage=InMemoryStorage())
        assert system.audit_trail is None

    def test_background_tasks_follow_flag(self):
        system = WorkflowSystem(config=memory_config(enable_sla_scheduler=True, sla_check_interval_seconds=3600),
                                storage=InMemoryStorage())

        system.start_background_tasks()
        assert system.sla_scheduler.is_running()
        system.shutdown()
        assert not system.sla_scheduler.is_running()

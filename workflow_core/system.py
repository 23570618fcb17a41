"""
Workflow System

Wires every component over a single storage backend.
"""

import logging
from typing import Optional

from .actions import ActionExecutor, HttpActionExecutor, LoggingActionExecutor
from .analytics import WorkflowAnalytics
from .approvals import ApprovalService
from .audit import AuditTrail
from .config import WorkflowConfig, get_config
from .definitions import DefinitionStore
from .engine import InstanceEngine
from .events import EventDispatcher
from .executor import StepExecutor
from .sla import SLAMonitor, SLAScheduler
from .storage import StorageInterface, create_storage
from .templates import TemplateService

logger = logging.getLogger("workflow.system")


class WorkflowSystem:
    """Workflow engine with all components initialized"""

    def __init__(self, config: Optional[WorkflowConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 actions: Optional[ActionExecutor] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage_backend, self.config.database_url)

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.events = EventDispatcher()
        self.actions = actions or self._create_action_executor()

        self.definitions = DefinitionStore(self.storage, self.audit_trail)
        self.approvals = ApprovalService(
            self.storage, self.audit_trail,
            default_due_hours=self.config.default_approval_due_hours,
            conflict_retries=self.config.conflict_retries
        )
        self.executor = StepExecutor(self.approvals, self.actions)
        self.engine = InstanceEngine(
            self.storage, self.definitions, self.executor, self.audit_trail,
            conflict_retries=self.config.conflict_retries
        )
        self.engine.set_approvals(self.approvals)
        self.approvals.set_step_resolver(self.engine.resolve_step)

        self.templates = TemplateService(
            self.definitions, self.audit_trail, default_limit=self.config.template_list_limit
        )
        self.sla_monitor = SLAMonitor(
            self.engine, self.approvals, self.actions,
            reminder_window_hours=self.config.reminder_window_hours
        )
        self.sla_scheduler = SLAScheduler(self.sla_monitor, self.config.sla_check_interval_seconds)
        self.analytics = WorkflowAnalytics(self.engine, self.definitions)

        for component in (self.definitions, self.approvals, self.engine, self.sla_monitor):
            component.set_event_dispatcher(self.events)

    def _create_action_executor(self) -> ActionExecutor:
        """HTTP executor when an action service is configured, log-only otherwise"""
        if not self.config.action_service_url:
            return LoggingActionExecutor()
        logger.info(f"Using action service at {self.config.action_service_url}")
        return HttpActionExecutor(
            base_url=self.config.action_service_url,
            timeout=self.config.action_timeout_seconds,
            api_key=self.config.action_api_key or None
        )

    def start_background_tasks(self) -> None:
        if self.config.enable_sla_scheduler:
            self.sla_scheduler.start()

    def shutdown(self) -> None:
        self.sla_scheduler.stop()
        if isinstance(self.actions, HttpActionExecutor):
            self.actions.close()
        self.storage.close()


_workflow_system: Optional[WorkflowSystem] = None


def get_workflow_system() -> WorkflowSystem:
    """Global workflow system, created on first use"""
    global _workflow_system
    if _workflow_system is None:
        _workflow_system = WorkflowSystem()
    return _workflow_system


def set_workflow_system(system: Optional[WorkflowSystem]) -> None:
    global _workflow_system
    _workflow_system = system

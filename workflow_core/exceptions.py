"""
Workflow Error Taxonomy

Every error raised by the engine carries a stable ``code`` so the API layer
can surface it as a typed error without inspecting messages.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors"""
    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(WorkflowError, ValueError):
    """Malformed input, malformed graph or cyclic dependencies"""
    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    """Requested state change is not allowed from the current state"""
    code = "INVALID_TRANSITION"


class NotFoundError(WorkflowError, LookupError):
    """Unknown definition, instance, step or approval id"""
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(WorkflowError):
    """A concurrent writer won the compare-and-set on a shared record"""
    code = "CONFLICT"


class AuthorizationError(WorkflowError, PermissionError):
    """Caller is not allowed to perform the operation"""
    code = "FORBIDDEN"


class ExternalActionError(WorkflowError):
    """An automation or notification collaborator failed"""
    code = "EXTERNAL_ACTION_FAILED"

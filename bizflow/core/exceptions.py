"""Exception hierarchy for the workflow engine.

Every error carries a machine-readable ``error_code`` (the reason code API
clients switch on), a category that decides the HTTP status, and free-form
``details``/``context`` that end up in the JSON error body.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXECUTION = "execution"
    STORAGE = "storage"
    CONFIGURATION = "configuration"


class WorkflowEngineError(Exception):
    """Base class of every error raised by the engine."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or type(self).__name__
        self.severity = severity
        self.category = category
        self.details = dict(details or {})
        self.recoverable = recoverable
        self.context = dict(context or {})
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Flat representation used in log records."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": type(self).__name__
        }

    def add_context(self, **kwargs):
        self.context.update({key: value for key, value in kwargs.items() if value is not None})
        return self

    def add_details(self, **kwargs):
        self.details.update(kwargs)
        return self


class WorkflowValidationError(WorkflowEngineError):
    """Base class for user-fixable validation failures."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(message, **kwargs)


class GraphValidationError(WorkflowValidationError):
    """Raised when a workflow graph breaks a structural rule."""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        node_ids: Optional[List[str]] = None,
        edge_ids: Optional[List[str]] = None,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ):
        super().__init__(message, error_code=reason or "GraphValidationError", **kwargs)
        self.reason = reason
        self.node_ids = node_ids or []
        self.edge_ids = edge_ids or []
        self.validation_errors = validation_errors or []
        self.add_details(
            reason=reason,
            node_ids=self.node_ids,
            edge_ids=self.edge_ids,
        )
        if validation_errors:
            self.add_details(validation_errors=validation_errors)

    @classmethod
    def from_result(cls, result, message: Optional[str] = None) -> "GraphValidationError":
        """Build an error from a failed ValidationResult."""
        edge_ids: List[str] = []
        for issue in result.errors:
            edge_ids.extend(edge_id for edge_id in issue.edge_ids if edge_id not in edge_ids)
        return cls(
            message or "; ".join(issue.message for issue in result.errors),
            reason=result.reason,
            node_ids=result.node_ids,
            edge_ids=edge_ids,
            validation_errors=[issue.model_dump() for issue in result.errors],
        )


class InvalidDefinitionError(GraphValidationError):
    """Raised when a definition cannot be started (invalid or not active)."""

    def __init__(self, message: str, definition_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("reason", "InvalidDefinition")
        super().__init__(message, **kwargs)
        self.error_code = "InvalidDefinition"
        self.add_context(definition_id=definition_id)


class InvalidOutcomeError(WorkflowValidationError):
    """Raised when a task is resolved with an outcome its node does not accept."""

    def __init__(self, message: str, task_id: Optional[str] = None, outcome: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="InvalidOutcome", **kwargs)
        self.add_context(task_id=task_id)
        if outcome:
            self.add_details(outcome=outcome)


class NotFoundError(WorkflowEngineError):
    """Raised when a definition, instance or task does not exist."""

    def __init__(self, message: str, resource: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=f"{resource}NotFound" if resource else "NotFound",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs
        )
        self.resource = resource
        self.resource_id = resource_id
        if resource_id:
            self.add_details(resource=resource, resource_id=resource_id)


class ConflictError(WorkflowEngineError):
    """Raised when a concurrent or repeated action loses a race.

    The caller should reload the record and decide whether to retry.
    """

    TASK_ALREADY_RESOLVED = "TaskAlreadyResolved"
    VERSION_MISMATCH = "VersionMismatch"
    INSTANCE_TERMINAL = "InstanceTerminal"
    STALE_TASK = "StaleTask"
    DEFINITION_HAS_INSTANCES = "DefinitionHasInstances"
    DEFINITION_IN_USE = "DefinitionInUse"

    def __init__(self, message: str, reason: str, **kwargs):
        super().__init__(
            message,
            error_code=reason,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFLICT,
            recoverable=True,
            **kwargs
        )
        self.reason = reason


class RunFailure(WorkflowEngineError):
    """A run-time failure that ends an instance in the rejected state."""

    NO_MATCHING_BRANCH = "NoMatchingBranch"
    CONDITION_ERROR = "ConditionError"
    AUTOMATION_FAILED = "AutomationFailed"
    AUTOMATION_TIMEOUT = "AutomationTimeout"
    AUTOMATION_UNAVAILABLE = "AutomationUnavailable"
    UNKNOWN_HANDLER = "UnknownHandler"
    STEP_LIMIT_EXCEEDED = "StepLimitExceeded"
    MISSING_NODE = "MissingNode"
    AMBIGUOUS_TRANSITION = "AmbiguousTransition"

    def __init__(self, message: str, code: str, node_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=code,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        self.code = code
        self.node_id = node_id
        self.add_context(node_id=node_id)

    def to_record(self) -> Dict[str, Any]:
        """Shape stored in instance context for audit."""
        return {
            "code": self.code,
            "reason": self.message,
            "node_id": self.node_id,
            "failed_at": self.timestamp.isoformat(),
        }


class HandlerRegistryError(WorkflowEngineError):
    """A predicate or automation could not be registered, found or called."""

    def __init__(self, message: str, handler_name: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        super().__init__(message, **kwargs)
        self.add_context(handler_name=handler_name)


class StorageError(WorkflowEngineError):
    """The instance store failed for reasons other than a lost race."""

    def __init__(self, message: str, operation: Optional[str] = None, table: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )
        self.add_context(operation=operation, table=table)


class ConfigurationError(WorkflowEngineError):
    """Settings that validate individually but cannot be used together or on this host."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(message, severity=ErrorSeverity.HIGH, category=ErrorCategory.CONFIGURATION, **kwargs)
        self.add_context(config_key=config_key)


# Checked in order; the first matching family decides the status
_STATUS_CODES = (
    (WorkflowValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (RunFailure, 422),
)


def get_status_code_for_error(error: WorkflowEngineError) -> int:
    """HTTP status for an engine error; 500 for storage and anything unexpected."""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """JSON body returned for an engine error."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }

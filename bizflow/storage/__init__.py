"""Database models and storage layer."""

from .database import (
    Base,
    build_engine,
    create_session_factory,
    create_tables,
    drop_tables,
    get_database_engine,
)
from .models import (
    WorkflowDefinitionModel,
    WorkflowInstanceModel,
    WorkflowTaskModel,
    WorkflowApprovalModel,
    WorkflowEventModel,
)

__all__ = [
    "Base",
    "build_engine",
    "create_session_factory",
    "create_tables",
    "drop_tables",
    "get_database_engine",
    "WorkflowDefinitionModel",
    "WorkflowInstanceModel",
    "WorkflowTaskModel",
    "WorkflowApprovalModel",
    "WorkflowEventModel",
]

"""Exception hierarchy for the workflow engine."""

from typing import List, Optional


class WorkflowError(Exception):
    """Base class for workflow engine errors."""


class WorkflowDefinitionError(WorkflowError):
    """Workflow graph is malformed; activation is rejected.

    Args:
        errors: Human-readable list of every problem found
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid workflow definition")


class WorkflowNotFoundError(WorkflowError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")


class ExecutionNotFoundError(WorkflowError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")


class NodeExecutionError(WorkflowError):
    """A node executor reported a business failure."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class CollaboratorError(WorkflowError):
    """An external collaborator (lead store, dispatcher, ...) is unavailable.

    Transient: the execution is failed and the error is surfaced to the
    caller so the owning queue can redeliver the triggering event.
    """

    def __init__(self, collaborator: str, message: str):
        self.collaborator = collaborator
        super().__init__(f"{collaborator}: {message}")


class ConditionSyntaxError(WorkflowError):
    """Condition expression could not be parsed."""

    def __init__(self, expression: str, message: str, position: Optional[int] = None):
        self.expression = expression
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Invalid condition '{expression}'{where}: {message}")

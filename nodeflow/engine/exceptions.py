"""
Exceptions raised by the workflow engine.

Errors raised inside a node's ``exec`` phase are handled by the node's retry
policy and never reach the caller directly. Everything else propagates out of
the run and aborts it.
"""

from typing import Dict, Optional


class WorkflowEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(WorkflowEngineError):
    """A node, flow or graph was built or invoked incorrectly."""


class DuplicateSuccessorError(ConfigurationError):
    """A successor is already registered for this action."""

    def __init__(self, node_name: str, action: str):
        self.node_name = node_name
        self.action = action
        super().__init__(
            f"Node '{node_name}' already has a successor for action '{action}'. "
            f"Pass overwrite=True to replace it."
        )


class NodeExecutionError(WorkflowEngineError):
    """A node failed to produce a result."""

    def __init__(self, node_name: str, message: str, cause: Optional[BaseException] = None):
        self.node_name = node_name
        self.cause = cause
        super().__init__(f"Node '{node_name}' execution failed: {message}")


class RetryExhaustedError(NodeExecutionError):
    """Raised by the default fallback once every exec attempt has failed."""

    def __init__(self, node_name: str, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            node_name,
            f"retry exhausted after {attempts} attempt(s): {last_error!r}",
            last_error,
        )


class BatchExecutionError(WorkflowEngineError):
    """
    One or more items of a parallel batch failed.

    Raised only after every sibling item has finished. ``errors`` maps the
    input index of each failed item to the error it raised.
    """

    def __init__(self, errors: Dict[int, BaseException], total: int):
        self.errors = dict(sorted(errors.items()))
        self.total = total
        index = self.first_index
        super().__init__(
            f"{len(self.errors)} of {total} batch item(s) failed; "
            f"first failure at index {index}: {self.errors[index]!r}"
        )

    @property
    def first_index(self) -> int:
        return next(iter(self.errors))

    @property
    def first_error(self) -> BaseException:
        return self.errors[self.first_index]


class MaxStepsExceededError(WorkflowEngineError):
    """A flow ran more node steps than its ``max_steps`` guard allows."""

    def __init__(self, flow_name: str, max_steps: int):
        self.flow_name = flow_name
        self.max_steps = max_steps
        super().__init__(f"Flow '{flow_name}' exceeded max steps ({max_steps})")


class FlowTimeoutError(WorkflowEngineError):
    """An asynchronous run did not finish within its timeout."""

    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"Run of '{name}' timed out after {timeout}s")

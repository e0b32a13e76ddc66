"""
Node Definition for Workflow Engine.

Nodes are the building blocks of a workflow. Each node runs a three-phase
lifecycle against the shared context:

    prep(shared)                        -> prep_res
    exec(prep_res)                      -> exec_res   (retried, then exec_fallback)
    post(shared, prep_res, exec_res)    -> action

The action returned by ``post`` selects the next node from the node's
successor table when it runs inside a Flow.
"""

from typing import Any, Dict, Iterable, List, Optional
import logging
import time
import uuid

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from nodeflow.config import settings
from nodeflow.engine.exceptions import (
    ConfigurationError,
    DuplicateSuccessorError,
    RetryExhaustedError,
)
from nodeflow.engine.state import (
    RunStats,
    activate,
    current_frame,
    record_attempt,
    record_fallback,
)


logger = logging.getLogger(__name__)

DEFAULT_ACTION = "default"

# Marks "argument not given" where None is itself a meaningful value
UNSET: Any = object()


class RetryPolicy(BaseModel):
    """Retry settings for a node's exec phase."""

    max_attempts: int = Field(1, ge=1, description="Total exec attempts, including the first")
    wait: float = Field(0.0, ge=0, description="Seconds to wait between attempts")
    backoff_factor: float = Field(1.0, ge=1.0, description="Wait multiplier after each failed attempt")
    max_wait: Optional[float] = Field(None, ge=0, description="Upper bound for a single wait")

    model_config = ConfigDict(frozen=True)

    @classmethod
    def build(cls, **values: Any) -> "RetryPolicy":
        """Create a policy, reporting invalid values as a ConfigurationError."""
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid retry policy: {e}") from e

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (zero-based) failed attempt."""
        delay = self.wait * (self.backoff_factor ** attempt)
        if self.max_wait is not None:
            delay = min(delay, self.max_wait)
        return delay


class BaseNode:
    """
    A node in the workflow graph.

    Attributes:
        node_id: Stable unique identifier
        name: Human-readable name (defaults to the class name)
        config: The node's own params; these win over flow and batch params
        successors: Mapping of action -> next node
    """

    def __init__(self, name: Optional[str] = None, params: Optional[Dict[str, Any]] = None):
        self.node_id = str(uuid.uuid4())
        self.name = name or type(self).__name__
        self.config: Dict[str, Any] = dict(params or {})
        self.successors: Dict[str, "BaseNode"] = {}

    @property
    def params(self) -> Dict[str, Any]:
        """Params in effect for the current run of this node."""
        frame = current_frame()
        if frame is not None and frame.node_id == self.node_id:
            return frame.params
        return self.config

    def set_params(self, params: Dict[str, Any]) -> None:
        """Replace the node's own params before a run."""
        self.config = dict(params)

    # ------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------

    def add_successor(
        self,
        node: "BaseNode",
        action: str = DEFAULT_ACTION,
        *,
        overwrite: bool = False,
    ) -> "BaseNode":
        """
        Register ``node`` as the successor for ``action``.

        Registering a second successor for the same action raises
        DuplicateSuccessorError unless ``overwrite`` is set, in which case the
        replacement is logged.

        Returns:
            The successor node, so registrations can be chained
        """
        if not isinstance(node, BaseNode):
            raise TypeError(f"Successor must be a node, got {type(node).__name__}")
        if not isinstance(action, str):
            raise TypeError("Action must be a string")

        if action in self.successors:
            if not overwrite:
                raise DuplicateSuccessorError(self.name, action)
            logger.warning(
                f"Overwriting successor for action '{action}' on node '{self.name}': "
                f"'{self.successors[action].name}' -> '{node.name}'"
            )
        self.successors[action] = node
        return node

    def then(self, node: "BaseNode") -> "BaseNode":
        return self.add_successor(node)

    def with_action(self, action: str) -> "ConditionalTransition":
        """Start a transition that registers its target under ``action``."""
        if not isinstance(action, str):
            raise TypeError("Action must be a string")
        return ConditionalTransition(self, action)

    def __rshift__(self, other: "BaseNode") -> "BaseNode":
        return self.then(other)

    def __sub__(self, action: str) -> "ConditionalTransition":
        return self.with_action(action)

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    def prep(self, shared: Dict[str, Any]) -> Any:
        return None

    def exec(self, prep_res: Any) -> Any:
        return None

    def post(self, shared: Dict[str, Any], prep_res: Any, exec_res: Any) -> Any:
        return None

    def _exec(self, prep_res: Any) -> Any:
        return self.exec(prep_res)

    def _run(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> Any:
        with activate(self.node_id, self.config if params is None else params, stats):
            prep_res = self.prep(shared)
            exec_res = self._exec(prep_res)
            return self.post(shared, prep_res, exec_res)

    def _warn_if_successors(self) -> None:
        if self.successors:
            logger.warning(f"Node '{self.name}' won't run its successors. Use a Flow.")

    def run(self, shared: Dict[str, Any]) -> Any:
        """
        Run this node alone and return its action.

        Successors are not followed; a node run directly is its own
        terminal point.
        """
        self._warn_if_successors()
        return self._run(shared)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self.name}', successors={list(self.successors)})"


class ConditionalTransition:
    """Binder returned by ``node.with_action(action)`` (or ``node - action``)."""

    def __init__(self, source: BaseNode, action: str):
        self.source = source
        self.action = action

    def then(self, target: BaseNode) -> BaseNode:
        return self.source.add_successor(target, self.action)

    def __rshift__(self, target: BaseNode) -> BaseNode:
        return self.then(target)


class Node(BaseNode):
    """
    Node with bounded retry and a fallback for its exec phase.

    ``exec`` is attempted up to ``max_attempts`` times, sleeping
    ``wait`` seconds (growing by ``backoff_factor``) between attempts. When
    the last attempt fails, ``exec_fallback`` is called once with the final
    error; its return value stands in for the exec result. An error raised by
    the fallback is never retried.
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        wait: Optional[float] = None,
        *,
        backoff_factor: float = 1.0,
        max_wait: Optional[float] = None,
        name: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(name=name, params=params)
        self.retry_policy = RetryPolicy.build(
            max_attempts=settings.DEFAULT_MAX_ATTEMPTS if max_attempts is None else max_attempts,
            wait=settings.DEFAULT_RETRY_WAIT if wait is None else wait,
            backoff_factor=backoff_factor,
            max_wait=max_wait,
        )

    @property
    def max_attempts(self) -> int:
        return self.retry_policy.max_attempts

    @property
    def wait(self) -> float:
        return self.retry_policy.wait

    @property
    def cur_retry(self) -> int:
        """Zero-based index of the exec attempt in progress."""
        frame = current_frame()
        if frame is not None and frame.node_id == self.node_id:
            return frame.attempt
        return 0

    def exec_fallback(self, prep_res: Any, exc: Exception) -> Any:
        raise RetryExhaustedError(self.name, self.max_attempts, exc) from exc

    def _exec(self, prep_res: Any) -> Any:
        policy = self.retry_policy
        for attempt in range(policy.max_attempts):
            record_attempt(attempt)
            try:
                return self.exec(prep_res)
            except Exception as e:
                if attempt == policy.max_attempts - 1:
                    logger.debug(
                        f"Node '{self.name}' failed all {policy.max_attempts} attempt(s), "
                        f"falling back: {e}"
                    )
                    record_fallback()
                    return self.exec_fallback(prep_res, e)
                delay = policy.delay_for(attempt)
                logger.debug(
                    f"Node '{self.name}' attempt {attempt + 1}/{policy.max_attempts} failed: {e}; "
                    f"retrying in {delay}s"
                )
                if delay > 0:
                    time.sleep(delay)


class BatchNode(Node):
    """
    Node whose exec runs once per item returned by ``prep``.

    Items are processed in order, each with its own retry/fallback cycle;
    the exec result is a list with one entry per item.
    """

    def _exec(self, items: Optional[Iterable[Any]]) -> List[Any]:
        results = []
        for item in items or []:
            results.append(super()._exec(item))
        return results

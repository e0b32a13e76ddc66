"""
Sequential Flow Orchestration.

A Flow walks the graph from its start node. Each node's ``post`` return value
is the action used to pick the next node from that node's successor table;
the walk stops when no successor matches. There is no implicit sequencing
beyond the declared edges.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional
import logging

from nodeflow.config import settings
from nodeflow.engine.exceptions import ConfigurationError, MaxStepsExceededError
from nodeflow.engine.executor import ExecutionResult, RouteGap, RunRecorder, Termination
from nodeflow.engine.graph import Graph
from nodeflow.engine.node import DEFAULT_ACTION, UNSET, BaseNode
from nodeflow.engine.state import RunStats, activate, merge_params


logger = logging.getLogger(__name__)


class Flow(BaseNode):
    """
    Orchestrates a graph of nodes linked by actions.

    A flow is itself a node: its ``prep`` runs before orchestration and its
    ``post`` runs after, receiving the last node's action as ``exec_res``.
    The default ``post`` returns that action, so a flow nested inside another
    flow routes on the action its own chain ended with.

    Usage:
        a >> b
        b - "retry" >> a
        result = Flow(start=a).run(shared)
    """

    def __init__(
        self,
        start: Optional[BaseNode] = None,
        *,
        name: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        max_steps: Optional[int] = UNSET,
    ):
        super().__init__(name=name, params=params)
        self.start_node = start
        self.max_steps = settings.MAX_STEPS if max_steps is UNSET else max_steps
        if self.max_steps is not None and self.max_steps < 1:
            raise ConfigurationError(f"Flow '{self.name}': max_steps must be >= 1")

    def start(self, start: BaseNode) -> BaseNode:
        """Set the start node and return it for chaining."""
        self.start_node = start
        return start

    @property
    def graph(self) -> Graph:
        """A read-only view of the nodes reachable from the start node."""
        return Graph.from_flow(self)

    def exec(self, prep_res: Any) -> Any:
        raise ConfigurationError(f"Flow '{self.name}' can't exec; it only orchestrates its nodes.")

    def post(self, shared: Dict[str, Any], prep_res: Any, exec_res: Any) -> Any:
        return exec_res

    # ------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------

    def get_next_node(
        self,
        current: BaseNode,
        action: Any,
        recorder: Optional[RunRecorder] = None,
    ) -> Optional[BaseNode]:
        """
        Resolve the successor of ``current`` for ``action``.

        Returns None when the chain ends. An action missing from a non-empty
        successor table is recorded as a RouteGap on the recorder.
        """
        if not current.successors:
            return None

        key = DEFAULT_ACTION if action is None else action
        if not isinstance(key, str):
            raise ConfigurationError(
                f"Node '{current.name}' post() must return a str action or None, "
                f"got {type(action).__name__}"
            )

        next_node = current.successors.get(key)
        if next_node is None:
            available = sorted(current.successors)
            logger.warning(
                f"Flow '{self.name}' ends: action '{key}' not found in {available} "
                f"of node '{current.name}'"
            )
            if recorder is not None:
                recorder.route_gap = RouteGap(node=current.name, action=key, available=available)
        else:
            logger.debug(f"Route: {current.name} -[{key}]-> {next_node.name}")
        return next_node

    def _first_node(self) -> BaseNode:
        if self.start_node is None:
            raise ConfigurationError(f"Flow '{self.name}' has no start node")
        return self.start_node

    def _check_steps(self, recorder: RunRecorder) -> None:
        if self.max_steps is not None and recorder.step_count >= self.max_steps:
            raise MaxStepsExceededError(self.name, self.max_steps)

    def _validate(self, allow_async: bool = False) -> None:
        errors = self.graph.validate(allow_async=allow_async)
        if errors:
            raise ConfigurationError(f"Flow '{self.name}' validation failed: {errors}")

    # ------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------

    def _orch(self, shared: Dict[str, Any], params: Mapping[str, Any], recorder: RunRecorder) -> Any:
        """Walk the graph once and return the last node's action."""
        current: Optional[BaseNode] = self._first_node()
        action = None

        while current is not None:
            self._check_steps(recorder)
            step = recorder.begin_step(current)
            try:
                action = current._run(shared, merge_params(params, current.config), step.stats)
            except Exception as e:
                recorder.fail_step(step, e)
                raise
            recorder.complete_step(step, action)
            current = self.get_next_node(current, action, recorder)

        return action

    def _execute(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> ExecutionResult:
        self._validate()
        recorder = RunRecorder(self.name)
        with activate(self.node_id, self.config if params is None else params, stats):
            prep_res = self.prep(shared)
            last_action = self._orch(shared, self.params, recorder)
            result = self.post(shared, prep_res, last_action)
        return recorder.finish(result, last_action)

    def _run(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> Any:
        execution = self._execute(shared, params, stats)
        if stats is not None:
            stats.child = execution
        return execution.result

    def execute(self, shared: Dict[str, Any]) -> ExecutionResult:
        """Run the flow and return the full execution record."""
        self._warn_if_successors()
        logger.info(f"Starting flow '{self.name}'")
        return self._execute(shared)


class BatchFlow(Flow):
    """
    Flow that runs its whole graph once per item returned by ``prep``.

    Each item is a mapping of params merged over the flow's params (a node's
    own config still wins). Items run strictly in order; the shared context
    carries over from one item to the next.
    """

    def _execute(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> ExecutionResult:
        self._validate()
        recorder = RunRecorder(self.name)
        last_action = None
        with activate(self.node_id, self.config if params is None else params, stats):
            prep_res = self.prep(shared)
            flow_params = self.params
            for index, item in enumerate(batch_items(self, prep_res)):
                item_recorder = recorder.for_item(index)
                last_action = self._orch(shared, merge_params(flow_params, item), item_recorder)
                recorder.add_item(item_recorder.finish(last_action, last_action))
            result = self.post(shared, prep_res, None)
        return recorder.finish(result, last_action, Termination.BATCH_COMPLETE)


def batch_items(flow: BaseNode, prep_res: Optional[Iterable[Any]]) -> List[Mapping[str, Any]]:
    """Validate the per-item param overrides returned by a batch flow's prep."""
    items = list(prep_res or [])
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            raise ConfigurationError(
                f"Batch flow '{flow.name}' item {index} must be a mapping of params, "
                f"got {type(item).__name__}"
            )
    return items

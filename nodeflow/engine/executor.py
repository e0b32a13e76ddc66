"""
Execution Records and Run Helpers.

A flow run produces an ``ExecutionResult``: the ordered node steps it took,
the action it ended on, and, when the chain stopped because an action had no
matching successor, the ``RouteGap`` describing it. Route gaps are a normal
way for a flow to end and are reported here instead of being raised.
"""

from typing import Any, Awaitable, Dict, List, Optional, Sequence, TYPE_CHECKING
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio
import uuid
import time
import logging

from nodeflow.engine.exceptions import BatchExecutionError, FlowTimeoutError
from nodeflow.engine.state import RunStats

if TYPE_CHECKING:
    from nodeflow.engine.node import BaseNode


logger = logging.getLogger(__name__)


class Termination(str, Enum):
    """Why a flow run stopped."""
    END_OF_CHAIN = "end_of_chain"  # Last node has no successors
    ROUTE_GAP = "route_gap"        # Action not found in a non-empty successor table
    BATCH_COMPLETE = "batch_complete"


@dataclass
class RouteGap:
    """An action that matched none of a node's successors."""
    node: str
    action: Optional[str]
    available: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"node": self.node, "action": self.action, "available": self.available}


@dataclass
class ExecutionStep:
    """A single node-run in the execution log."""
    step: int
    node: str
    node_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    action: Optional[Any] = None
    item_index: Optional[int] = None
    error: Optional[str] = None
    stats: RunStats = field(default_factory=RunStats)

    @property
    def attempts(self) -> int:
        return self.stats.attempts

    @property
    def fell_back(self) -> bool:
        return self.stats.fallbacks > 0

    @property
    def child(self) -> Optional["ExecutionResult"]:
        """Record of the nested run when the node is itself a flow."""
        return self.stats.child

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "node": self.node,
            "node_id": self.node_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "action": self.action,
            "item_index": self.item_index,
            "attempts": self.attempts,
            "fell_back": self.fell_back,
            "error": self.error,
            "child": self.child.to_dict() if self.child else None,
        }


@dataclass
class ExecutionResult:
    """Result of a flow run."""
    run_id: str
    flow: str
    result: Any = None
    last_action: Optional[Any] = None
    termination: Termination = Termination.END_OF_CHAIN
    route_gap: Optional[RouteGap] = None
    steps: List[ExecutionStep] = field(default_factory=list)
    items: List["ExecutionResult"] = field(default_factory=list)
    item_index: Optional[int] = None
    context_diff: Optional[Dict[str, Any]] = None  # Isolated parallel items only
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None

    @property
    def visited(self) -> List[str]:
        """Node names in the order they ran."""
        return [step.node for step in self.steps]

    def all_route_gaps(self) -> List[RouteGap]:
        """Route gaps of this run and of any flows nested in its steps."""
        gaps = [self.route_gap] if self.route_gap else []
        for item in self.items:
            if item.route_gap:
                gaps.append(item.route_gap)
        for step in self.steps:
            if step.child is not None:
                gaps.extend(step.child.all_route_gaps())
        return gaps

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "flow": self.flow,
            "result": self.result,
            "last_action": self.last_action,
            "termination": self.termination.value,
            "route_gap": self.route_gap.to_dict() if self.route_gap else None,
            "steps": [step.to_dict() for step in self.steps],
            "items": [item.to_dict() for item in self.items],
            "item_index": self.item_index,
            "context_diff": self.context_diff,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_duration_ms": self.total_duration_ms,
        }


class RunRecorder:
    """
    Collects the steps of one flow run (or one batch item of it).

    The recorder is per-run state: flows create a fresh one for every run
    and never store it on themselves.
    """

    def __init__(self, flow_name: str, run_id: Optional[str] = None, item_index: Optional[int] = None):
        self.run_id = run_id or str(uuid.uuid4())
        self.flow_name = flow_name
        self.item_index = item_index
        self.steps: List[ExecutionStep] = []
        self.items: List[ExecutionResult] = []
        self.route_gap: Optional[RouteGap] = None
        self.started_at = datetime.now()
        self._start_time = time.time()

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def for_item(self, index: int) -> "RunRecorder":
        """Create a recorder for one batch item of this run."""
        return RunRecorder(self.flow_name, run_id=self.run_id, item_index=index)

    def begin_step(self, node: "BaseNode") -> ExecutionStep:
        step = ExecutionStep(
            step=len(self.steps) + 1,
            node=node.name,
            node_id=node.node_id,
            started_at=datetime.now(),
            item_index=self.item_index,
        )
        self.steps.append(step)
        if self.item_index is None:
            logger.info(f"Flow '{self.flow_name}': executing node '{node.name}' (step {step.step})")
        else:
            logger.info(
                f"Flow '{self.flow_name}' item {self.item_index}: "
                f"executing node '{node.name}' (step {step.step})"
            )
        return step

    def complete_step(self, step: ExecutionStep, action: Any) -> None:
        step.completed_at = datetime.now()
        step.duration_ms = (step.completed_at - step.started_at).total_seconds() * 1000
        step.action = action

    def fail_step(self, step: ExecutionStep, error: BaseException) -> None:
        step.completed_at = datetime.now()
        step.duration_ms = (step.completed_at - step.started_at).total_seconds() * 1000
        step.error = str(error)
        logger.error(f"Node {step.node} failed in flow '{self.flow_name}': {error}")

    def add_item(self, item: ExecutionResult) -> None:
        self.items.append(item)
        self.steps.extend(item.steps)

    def finish(self, result: Any, last_action: Any, termination: Optional[Termination] = None) -> ExecutionResult:
        if termination is None:
            termination = Termination.ROUTE_GAP if self.route_gap else Termination.END_OF_CHAIN
        execution = ExecutionResult(
            run_id=self.run_id,
            flow=self.flow_name,
            result=result,
            last_action=last_action,
            termination=termination,
            route_gap=self.route_gap,
            steps=self.steps,
            items=self.items,
            item_index=self.item_index,
            started_at=self.started_at,
            completed_at=datetime.now(),
            total_duration_ms=(time.time() - self._start_time) * 1000,
        )
        logger.debug(
            f"Flow '{self.flow_name}' finished after {len(self.steps)} step(s) "
            f"({termination.value})"
        )
        return execution


# ============================================================
# Async helpers
# ============================================================

async def run_with_timeout(awaitable: Awaitable[Any], timeout: Optional[float], name: str) -> Any:
    """Await a whole run, bounded by ``timeout`` seconds when one is given."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning(f"Run of '{name}' timed out after {timeout}s")
        raise FlowTimeoutError(name, timeout) from exc


async def gather_ordered(
    awaitables: Sequence[Awaitable[Any]],
    max_concurrency: Optional[int] = None,
) -> List[Any]:
    """
    Run awaitables concurrently and return their results in input order.

    A failing item does not cancel its siblings. Once every item has finished,
    failures are raised together as a ``BatchExecutionError``.
    """
    if max_concurrency is None:
        pending = list(awaitables)
    else:
        semaphore = asyncio.Semaphore(max_concurrency)

        async def bounded(awaitable: Awaitable[Any]) -> Any:
            async with semaphore:
                return await awaitable

        pending = [bounded(awaitable) for awaitable in awaitables]

    outcomes = await asyncio.gather(*pending, return_exceptions=True)

    errors: Dict[int, BaseException] = {}
    for index, outcome in enumerate(outcomes):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            errors[index] = outcome

    if errors:
        error = BatchExecutionError(errors, len(outcomes))
        raise error from error.first_error
    return list(outcomes)

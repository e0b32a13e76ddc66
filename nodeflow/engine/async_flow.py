"""
Asynchronous Flow Orchestration.

AsyncFlow walks the graph exactly like Flow, awaiting async nodes and
running blocking nodes in a worker thread so their retry waits do not stall
the event loop. The batch variants apply the whole flow once per item, either
in order or concurrently.
"""

from copy import deepcopy
from typing import Any, Dict, Mapping, Optional
import asyncio
import logging

from nodeflow.config import settings
from nodeflow.engine.exceptions import ConfigurationError
from nodeflow.engine.executor import (
    ExecutionResult,
    RunRecorder,
    Termination,
    gather_ordered,
    run_with_timeout,
)
from nodeflow.engine.async_node import resolve_concurrency
from nodeflow.engine.flow import Flow, batch_items
from nodeflow.engine.graph import is_async_node
from nodeflow.engine.node import UNSET, BaseNode
from nodeflow.engine.state import (
    ContextIsolation,
    RunStats,
    activate,
    branch_contexts,
    compute_context_diff,
    isolate_context,
    merge_branches,
    merge_params,
)


logger = logging.getLogger(__name__)


class AsyncFlow(Flow):
    """
    Flow whose own phases are coroutines and whose nodes may suspend.

    Usage:
        flow = AsyncFlow(start=fetch)
        result = await flow.run_async(shared, timeout=30)
    """

    async def prep_async(self, shared: Dict[str, Any]) -> Any:
        return None

    async def post_async(self, shared: Dict[str, Any], prep_res: Any, exec_res: Any) -> Any:
        return exec_res

    def _execute(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> ExecutionResult:
        raise ConfigurationError(f"Flow '{self.name}' is asynchronous. Use run_async.")

    async def _run_node(
        self,
        node: BaseNode,
        shared: Dict[str, Any],
        params: Dict[str, Any],
        stats: RunStats,
    ) -> Any:
        if is_async_node(node):
            return await node._run_async(shared, params, stats)
        # Blocking nodes run in a worker thread to keep the loop responsive
        return await asyncio.to_thread(node._run, shared, params, stats)

    async def _orch_async(
        self,
        shared: Dict[str, Any],
        params: Mapping[str, Any],
        recorder: RunRecorder,
    ) -> Any:
        """Walk the graph once and return the last node's action."""
        current: Optional[BaseNode] = self._first_node()
        action = None

        while current is not None:
            self._check_steps(recorder)
            step = recorder.begin_step(current)
            try:
                action = await self._run_node(
                    current, shared, merge_params(params, current.config), step.stats
                )
            except Exception as e:
                recorder.fail_step(step, e)
                raise
            recorder.complete_step(step, action)
            current = self.get_next_node(current, action, recorder)

        return action

    async def _execute_async(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> ExecutionResult:
        self._validate(allow_async=True)
        recorder = RunRecorder(self.name)
        with activate(self.node_id, self.config if params is None else params, stats):
            prep_res = await self.prep_async(shared)
            last_action = await self._orch_async(shared, self.params, recorder)
            result = await self.post_async(shared, prep_res, last_action)
        return recorder.finish(result, last_action)

    async def _run_async(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> Any:
        execution = await self._execute_async(shared, params, stats)
        if stats is not None:
            stats.child = execution
        return execution.result

    async def execute_async(
        self,
        shared: Dict[str, Any],
        timeout: Optional[float] = UNSET,
    ) -> ExecutionResult:
        """
        Run the flow and return the full execution record.

        Args:
            shared: The shared context
            timeout: Seconds before the whole run fails with FlowTimeoutError
                (defaults to settings.EXECUTION_TIMEOUT; None disables it)
        """
        self._warn_if_successors()
        if timeout is UNSET:
            timeout = settings.EXECUTION_TIMEOUT
        logger.info(f"Starting flow '{self.name}'")
        return await run_with_timeout(self._execute_async(shared), timeout, self.name)

    async def run_async(self, shared: Dict[str, Any], timeout: Optional[float] = UNSET) -> Any:
        """Run the flow and return the result of its ``post_async``."""
        return (await self.execute_async(shared, timeout)).result


class AsyncBatchFlow(AsyncFlow):
    """Async flow that runs its graph once per item, strictly in order."""

    async def _execute_async(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> ExecutionResult:
        self._validate(allow_async=True)
        recorder = RunRecorder(self.name)
        last_action = None
        with activate(self.node_id, self.config if params is None else params, stats):
            prep_res = await self.prep_async(shared)
            flow_params = self.params
            for index, item in enumerate(batch_items(self, prep_res)):
                item_recorder = recorder.for_item(index)
                last_action = await self._orch_async(
                    shared, merge_params(flow_params, item), item_recorder
                )
                recorder.add_item(item_recorder.finish(last_action, last_action))
            result = await self.post_async(shared, prep_res, None)
        return recorder.finish(result, last_action, Termination.BATCH_COMPLETE)


class AsyncParallelBatchFlow(AsyncFlow):
    """
    Async flow that runs its graph for all items concurrently.

    By default every item runs against a private deep copy of the shared
    context. When all items have finished, the changes each copy received are
    merged back into the shared context in input-index order, so for
    conflicting writes the highest index wins; such conflicts are logged as
    warnings and each item record carries the diff its copy produced. With
    ``isolation=ContextIsolation.SHARED`` items share the caller's context
    directly and concurrent writes to the same key race (last write wins).

    If any item fails, the remaining items still run to completion, the
    shared context is left without the batch's changes (copy isolation) and
    a BatchExecutionError is raised.
    """

    def __init__(
        self,
        start: Optional[BaseNode] = None,
        *,
        max_concurrency: Optional[int] = UNSET,
        isolation: ContextIsolation = ContextIsolation.COPY,
        **kwargs: Any,
    ):
        super().__init__(start, **kwargs)
        self.max_concurrency = resolve_concurrency(self.name, max_concurrency)
        self.isolation = ContextIsolation(isolation)

    async def _execute_async(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> ExecutionResult:
        self._validate(allow_async=True)
        recorder = RunRecorder(self.name)
        with activate(self.node_id, self.config if params is None else params, stats):
            prep_res = await self.prep_async(shared)
            flow_params = self.params
            items = batch_items(self, prep_res)

            baseline = isolate_context(shared) if self.isolation == ContextIsolation.COPY else shared
            branches = branch_contexts(shared, len(items), self.isolation)
            recorders = [recorder.for_item(index) for index in range(len(items))]

            actions = await gather_ordered(
                [
                    self._orch_async(branches[index], merge_params(flow_params, item), recorders[index])
                    for index, item in enumerate(items)
                ],
                self.max_concurrency,
            )

            diffs = [None] * len(items)
            if self.isolation == ContextIsolation.COPY:
                # Diff before merging; merge-back may adopt branch dicts into shared
                diffs = [deepcopy(compute_context_diff(baseline, branch)) for branch in branches]
                merge_branches(shared, baseline, branches)
            for item_recorder, action, diff in zip(recorders, actions, diffs):
                item_result = item_recorder.finish(action, action)
                item_result.context_diff = diff
                recorder.add_item(item_result)

            result = await self.post_async(shared, prep_res, None)
        last_action = actions[-1] if actions else None
        return recorder.finish(result, last_action, Termination.BATCH_COMPLETE)

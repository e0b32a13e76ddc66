"""
Asynchronous Nodes.

Async nodes implement coroutine versions of the lifecycle phases
(``prep_async``, ``exec_async``, ``exec_fallback_async``, ``post_async``) and
are triggered with ``run_async``. Retry waits use ``asyncio.sleep`` so a
waiting node never blocks other tasks on the event loop.
"""

from typing import Any, Dict, Iterable, List, Optional
import asyncio
import logging

from nodeflow.config import settings
from nodeflow.engine.exceptions import ConfigurationError, RetryExhaustedError
from nodeflow.engine.executor import gather_ordered, run_with_timeout
from nodeflow.engine.node import UNSET, Node
from nodeflow.engine.state import RunStats, activate, record_attempt, record_fallback


logger = logging.getLogger(__name__)


def resolve_concurrency(owner: str, max_concurrency: Optional[int]) -> Optional[int]:
    """Apply the settings default and validate a parallel batch's concurrency cap."""
    limit = settings.PARALLEL_LIMIT if max_concurrency is UNSET else max_concurrency
    if limit is not None and limit < 1:
        raise ConfigurationError(f"'{owner}': max_concurrency must be >= 1 or None")
    return limit


class AsyncNode(Node):
    """Node whose lifecycle phases are coroutines."""

    async def prep_async(self, shared: Dict[str, Any]) -> Any:
        return None

    async def exec_async(self, prep_res: Any) -> Any:
        return None

    async def exec_fallback_async(self, prep_res: Any, exc: Exception) -> Any:
        raise RetryExhaustedError(self.name, self.max_attempts, exc) from exc

    async def post_async(self, shared: Dict[str, Any], prep_res: Any, exec_res: Any) -> Any:
        return None

    def _run(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> Any:
        raise ConfigurationError(f"Node '{self.name}' is asynchronous. Use run_async.")

    async def _exec_async(self, prep_res: Any) -> Any:
        policy = self.retry_policy
        for attempt in range(policy.max_attempts):
            record_attempt(attempt)
            try:
                return await self.exec_async(prep_res)
            except Exception as e:
                if attempt == policy.max_attempts - 1:
                    logger.debug(
                        f"Node '{self.name}' failed all {policy.max_attempts} attempt(s), "
                        f"falling back: {e}"
                    )
                    record_fallback()
                    return await self.exec_fallback_async(prep_res, e)
                delay = policy.delay_for(attempt)
                logger.debug(
                    f"Node '{self.name}' attempt {attempt + 1}/{policy.max_attempts} failed: {e}; "
                    f"retrying in {delay}s"
                )
                if delay > 0:
                    await asyncio.sleep(delay)

    async def _run_async(
        self,
        shared: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
    ) -> Any:
        with activate(self.node_id, self.config if params is None else params, stats):
            prep_res = await self.prep_async(shared)
            exec_res = await self._exec_async(prep_res)
            return await self.post_async(shared, prep_res, exec_res)

    async def run_async(self, shared: Dict[str, Any], timeout: Optional[float] = UNSET) -> Any:
        """
        Run this node alone and return its action.

        Args:
            shared: The shared context
            timeout: Seconds before the run fails with FlowTimeoutError
                (defaults to settings.EXECUTION_TIMEOUT)
        """
        self._warn_if_successors()
        if timeout is UNSET:
            timeout = settings.EXECUTION_TIMEOUT
        return await run_with_timeout(self._run_async(shared), timeout, self.name)


class AsyncBatchNode(AsyncNode):
    """Async node whose exec runs once per item, strictly in order."""

    async def _exec_async(self, items: Optional[Iterable[Any]]) -> List[Any]:
        results = []
        for item in items or []:
            results.append(await super()._exec_async(item))
        return results


class AsyncParallelBatchNode(AsyncNode):
    """
    Async node whose exec runs for all items concurrently.

    Results are returned in input order regardless of which item finishes
    first. ``max_concurrency`` caps how many items run at once (defaults to
    settings.PARALLEL_LIMIT; None means no cap).
    """

    def __init__(self, *args: Any, max_concurrency: Optional[int] = UNSET, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.max_concurrency = resolve_concurrency(self.name, max_concurrency)

    async def _exec_async(self, items: Optional[Iterable[Any]]) -> List[Any]:
        exec_item = super()._exec_async
        return await gather_ordered(
            [exec_item(item) for item in (items or [])],
            self.max_concurrency,
        )

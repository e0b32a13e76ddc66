"""
Execution State for Workflow Runs.

Nodes, flows and successor tables are definitions: they are built once and
are never mutated or cloned while a run is in progress. Everything that
changes during a run lives in this module instead.

- ``NodeFrame`` records which node is executing, the params it was given and
  the current retry attempt. The active frame is held in a context variable,
  so every asyncio task (one per parallel batch item) sees its own frame.
- ``RunStats`` collects attempt and fallback counts for one node-run.
- The context isolation helpers give each parallel branch a private copy of
  the shared context and merge the copies back in input-index order.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from copy import deepcopy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, MutableMapping, Optional, Sequence, Tuple
import logging

from nodeflow.engine.exceptions import ConfigurationError


logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class RunStats:
    """
    Attempt counters for a single node-run.

    When the node is itself a flow, ``child`` holds that flow's
    ExecutionResult for the run.
    """
    attempts: int = 0
    fallbacks: int = 0
    child: Optional[Any] = None


@dataclass(frozen=True)
class NodeFrame:
    """The node currently executing and the run-scoped values it sees."""
    node_id: str
    params: Dict[str, Any]
    attempt: int = 0
    stats: RunStats = field(default_factory=RunStats)


_current_frame: ContextVar[Optional[NodeFrame]] = ContextVar(
    "nodeflow_current_frame", default=None
)


def current_frame() -> Optional[NodeFrame]:
    """Get the frame of the node currently executing, if any."""
    return _current_frame.get()


@contextmanager
def activate(
    node_id: str,
    params: Mapping[str, Any],
    stats: Optional[RunStats] = None,
) -> Iterator[NodeFrame]:
    """Make a node the active one for the duration of the block."""
    frame = NodeFrame(node_id=node_id, params=dict(params), stats=stats or RunStats())
    token = _current_frame.set(frame)
    try:
        yield frame
    finally:
        _current_frame.reset(token)


def record_attempt(attempt: int) -> None:
    """Mark the start of an exec attempt on the active frame."""
    frame = _current_frame.get()
    if frame is None:
        return
    frame.stats.attempts += 1
    _current_frame.set(replace(frame, attempt=attempt))


def record_fallback() -> None:
    frame = _current_frame.get()
    if frame is not None:
        frame.stats.fallbacks += 1


def merge_params(*layers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Shallow-merge param layers into a new dict.

    Later layers take precedence, so callers pass them lowest first:
    flow-level params, then a batch item's override, then the node's own
    config.
    """
    merged: Dict[str, Any] = {}
    for layer in layers:
        if layer:
            merged.update(layer)
    return merged


# ============================================================
# Shared context isolation
# ============================================================

class ContextIsolation(str, Enum):
    """How parallel batch branches see the shared context."""
    COPY = "copy"      # Private deep copy per branch, merged back by index
    SHARED = "shared"  # Same object for every branch, last write wins


def isolate_context(shared: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """
    Return a private deep copy of the shared context for one branch.

    Raises:
        ConfigurationError: If a value (a lock, a client...) cannot be copied
    """
    try:
        return deepcopy(shared)
    except (TypeError, AttributeError, RecursionError) as e:
        key = _first_uncopyable_key(shared)
        where = f"key '{key}'" if key is not None else "a value"
        raise ConfigurationError(
            f"Shared context {where} cannot be copied for an isolated branch: {e}. "
            f"Keep it outside the shared context or use ContextIsolation.SHARED."
        ) from e


def _first_uncopyable_key(shared: Mapping[str, Any]) -> Optional[str]:
    for key, value in shared.items():
        try:
            deepcopy(value)
        except (TypeError, AttributeError, RecursionError):
            return key
    return None


def compute_context_diff(before: Mapping[str, Any], after: Mapping[str, Any]) -> Dict[str, Any]:
    """Compute a top-level diff between two snapshots of a shared context."""
    diff: Dict[str, Any] = {"added": {}, "updated": {}, "removed": []}

    for key, value in after.items():
        if key not in before:
            diff["added"][key] = value
        elif before[key] != value:
            diff["updated"][key] = {"from": before[key], "to": value}

    for key in before:
        if key not in after:
            diff["removed"].append(key)

    return diff


def merge_branch_context(
    target: MutableMapping[str, Any],
    baseline: Mapping[str, Any],
    branch: Mapping[str, Any],
    written: Optional[Dict[Tuple[Any, ...], Any]] = None,
    path: Tuple[Any, ...] = (),
) -> List[str]:
    """
    Apply the changes one branch made to its copy onto ``target``.

    Changes are measured against ``baseline``, the snapshot the branch copy
    was taken from. Nested mappings are merged key by key (including mappings
    that several branches create under the same new key), so branches that
    write different keys of the same nested dict do not clobber each other.
    Lists and other values are replaced whole.

    ``written`` maps leaf paths to the values earlier branches wrote there.
    Returns the dotted paths this branch overwrote with a different value.
    """
    conflicts: List[str] = []

    for key in baseline:
        if key not in branch and key in target:
            del target[key]

    for key, value in branch.items():
        base_value = baseline.get(key, _MISSING)
        current = target.get(key, _MISSING)
        key_path = path + (key,)
        if (
            isinstance(value, Mapping)
            and isinstance(current, MutableMapping)
            and (base_value is _MISSING or isinstance(base_value, Mapping))
        ):
            conflicts.extend(merge_branch_context(
                current, {} if base_value is _MISSING else base_value, value, written, key_path
            ))
        elif base_value is _MISSING or value != base_value:
            if written is not None:
                if key_path in written and written[key_path] != value:
                    conflicts.append(".".join(str(part) for part in key_path))
                written[key_path] = value
            target[key] = value

    return conflicts


def merge_branches(
    shared: MutableMapping[str, Any],
    baseline: Mapping[str, Any],
    branches: Sequence[Mapping[str, Any]],
) -> List[str]:
    """
    Merge branch copies back into the shared context in index order.

    Returns the dotted paths of leaves that more than one branch set to
    different values; the highest index's value is the one kept.
    """
    written: Dict[Tuple[Any, ...], Any] = {}
    conflicts: List[str] = []
    for index, branch in enumerate(branches):
        for key_path in merge_branch_context(shared, baseline, branch, written):
            logger.warning(
                f"Parallel branch {index} overwrote '{key_path}' already set by an "
                f"earlier branch; keeping the value from branch {index}"
            )
            if key_path not in conflicts:
                conflicts.append(key_path)
    return conflicts


def branch_contexts(
    shared: MutableMapping[str, Any],
    count: int,
    isolation: ContextIsolation,
) -> List[MutableMapping[str, Any]]:
    if isolation == ContextIsolation.SHARED:
        return [shared] * count
    return [isolate_context(shared) for _ in range(count)]

"""
Engine package - Core workflow orchestration components.
"""

from nodeflow.engine.exceptions import (
    WorkflowEngineError,
    ConfigurationError,
    DuplicateSuccessorError,
    NodeExecutionError,
    RetryExhaustedError,
    BatchExecutionError,
    MaxStepsExceededError,
    FlowTimeoutError,
)
from nodeflow.engine.state import ContextIsolation, merge_params
from nodeflow.engine.node import BaseNode, Node, BatchNode, RetryPolicy, ConditionalTransition, DEFAULT_ACTION
from nodeflow.engine.executor import ExecutionResult, ExecutionStep, RouteGap, Termination
from nodeflow.engine.graph import Graph, Edge
from nodeflow.engine.flow import Flow, BatchFlow
from nodeflow.engine.async_node import AsyncNode, AsyncBatchNode, AsyncParallelBatchNode
from nodeflow.engine.async_flow import AsyncFlow, AsyncBatchFlow, AsyncParallelBatchFlow

__all__ = [
    "WorkflowEngineError",
    "ConfigurationError",
    "DuplicateSuccessorError",
    "NodeExecutionError",
    "RetryExhaustedError",
    "BatchExecutionError",
    "MaxStepsExceededError",
    "FlowTimeoutError",
    "ContextIsolation",
    "merge_params",
    "BaseNode",
    "Node",
    "BatchNode",
    "RetryPolicy",
    "ConditionalTransition",
    "DEFAULT_ACTION",
    "ExecutionResult",
    "ExecutionStep",
    "RouteGap",
    "Termination",
    "Graph",
    "Edge",
    "Flow",
    "BatchFlow",
    "AsyncNode",
    "AsyncBatchNode",
    "AsyncParallelBatchNode",
    "AsyncFlow",
    "AsyncBatchFlow",
    "AsyncParallelBatchFlow",
]

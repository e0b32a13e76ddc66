"""
Workflows package - Sample workflow implementations.
"""

from nodeflow.workflows.code_review import (
    create_code_review_flow,
    create_batch_review_flow,
    create_parallel_review_flow,
    review_code,
)

__all__ = [
    "create_code_review_flow",
    "create_batch_review_flow",
    "create_parallel_review_flow",
    "review_code",
]

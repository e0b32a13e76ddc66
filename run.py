#!/usr/bin/env python3
"""
Simple run script for the NodeFlow demo workflow.

Usage:
    python run.py                      # review the bundled sample code
    python run.py a.py b.py            # review files one after another
    PARALLEL=true python run.py a.py b.py

Or with custom settings:
    NODEFLOW_LOG_LEVEL=DEBUG QUALITY_THRESHOLD=8 python run.py
"""

import asyncio
import os
import sys
from pathlib import Path

from nodeflow.config import configure_logging, settings
from nodeflow.workflows.code_review import create_batch_review_flow, create_parallel_review_flow


SAMPLE_CODE = '''
def calculate_total(items):
    total = 0
    for item in items:
        if item.price > 0:
            if item.quantity > 0:
                if item.discount:
                    total += item.price * item.quantity * (1 - item.discount)
                else:
                    total += item.price * item.quantity
    return total

def process_data(data):
    result = []
    for i in range(len(data)):
        if data[i] > 100:
            result.append(data[i] * 2)
        else:
            result.append(data[i])
    return result
'''


def main():
    """Review the given files (or the sample code) and print the summaries."""
    configure_logging()
    threshold = float(os.getenv("QUALITY_THRESHOLD", "7.0"))
    parallel = os.getenv("PARALLEL", "false").lower() == "true"

    paths = sys.argv[1:]
    sources = {path: Path(path).read_text() for path in paths} or {"sample": SAMPLE_CODE}
    shared = {"sources": sources}

    print(f"{settings.APP_NAME} v{settings.APP_VERSION} - reviewing {len(sources)} source(s)")

    if parallel:
        flow = create_parallel_review_flow(quality_threshold=threshold)
        execution = asyncio.run(flow.execute_async(shared))
    else:
        flow = create_batch_review_flow(quality_threshold=threshold)
        execution = flow.execute(shared)

    print(f"\nSteps: {len(execution.steps)}  Duration: {execution.total_duration_ms:.2f}ms")
    for review in shared.get("reviews", {}).values():
        print(f"\n{review['summary']}")
        for suggestion in review.get("suggestions", []):
            print(f"  - [{suggestion['priority']}] {suggestion['suggestion']}")


if __name__ == "__main__":
    main()

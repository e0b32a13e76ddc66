"""
NodeFlow - A small graph-based workflow execution engine.

Compose nodes with a prep/exec/post lifecycle, link them by named actions,
and run them with sequential, batched or parallel flows.
"""

__version__ = "1.0.0"

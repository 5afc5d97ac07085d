"""
executor/__init__.py

Plan execution with bounded parallelism, retries and cancellation.
"""

from converge.executor.executor import PlanExecutor

__all__ = ["PlanExecutor"]

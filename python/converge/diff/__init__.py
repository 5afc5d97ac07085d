"""
diff/__init__.py

Planning: the DiffEngine and the pre-plan state refresh.
"""

from converge.diff.engine import DiffEngine, UNKNOWN, contains_unknown, display_value
from converge.diff.refresh import refresh

__all__ = ["DiffEngine", "UNKNOWN", "contains_unknown", "display_value", "refresh"]

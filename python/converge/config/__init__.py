"""
config/__init__.py

Loading ResourceSpecs from YAML/JSON configuration documents.
"""

from converge.config.loader import (
    ResourceDocument,
    load_specs,
    load_specs_from_text,
    specs_from_document,
)

__all__ = ["ResourceDocument", "load_specs", "load_specs_from_text", "specs_from_document"]

"""
converge/config/loader.py

Loads ResourceSpecs from structured YAML or JSON documents of the form:

    resources:
      vpc:
        main:
          cidr_block: 10.0.0.0/16
      subnet:
        a:
          vpc_id: ${vpc.main.id}
          cidr_block: 10.0.1.0/24
          depends_on: [iam_role.nodes]

A string that is exactly '${type.name.attribute}' becomes a Reference; no
other interpolation is performed. Several documents may be merged, but an
address may only be declared once across all of them.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from converge.errors import ConfigError
from converge.graph.builder import index_specs
from converge.models.resource import Reference, ResourceSpec
from converge.models.validator import validate_type

Source = Union[str, Path]

_DOCUMENT_SUFFIXES = (".yaml", ".yml", ".json")


class ResourceDocument(BaseModel):
    """Top-level shape of a configuration document."""

    model_config = ConfigDict(extra="forbid")

    resources: Dict[str, Dict[str, Dict[str, Any]]] = Field(default_factory=dict)


def _convert_references(value: Any, where: str) -> Any:
    if isinstance(value, str):
        reference = Reference.parse(value)
        if reference is not None:
            return reference
        if "${" in value:
            raise ConfigError(
                f"{where}: malformed reference {value!r}; "
                "expected exactly '${type.name.attribute}'"
            )
        return value
    if isinstance(value, dict):
        return {key: _convert_references(item, where) for key, item in value.items()}
    if isinstance(value, list):
        return [_convert_references(item, where) for item in value]
    return value


def _parse_document(text: str, source: str) -> ResourceDocument:
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse {source}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{source}: top level must be a mapping with a 'resources' key")
    resources = raw.get("resources")
    if isinstance(resources, dict):
        # Allow empty bodies such as 'main:' with no attributes.
        raw["resources"] = {
            rtype: (
                {name: body or {} for name, body in named.items()}
                if isinstance(named, dict)
                else named or {}
            )
            for rtype, named in resources.items()
        }
    return validate_type(raw, ResourceDocument, source=source)


def specs_from_document(
    document: ResourceDocument, source: str = "<document>"
) -> List[ResourceSpec]:
    """Turn a parsed document into ResourceSpecs, sorted by address.

    Raises:
        ConfigError: On invalid addresses, depends_on entries or references.
    """
    specs: List[ResourceSpec] = []
    for rtype, named in sorted(document.resources.items()):
        for name, body in sorted(named.items()):
            where = f"{source}: {rtype}.{name}"
            attributes = dict(body)
            depends_on = attributes.pop("depends_on", None) or []
            if not isinstance(depends_on, list):
                raise ConfigError(f"{where}: depends_on must be a list of addresses")
            specs.append(
                validate_type(
                    {
                        "address": {"type": rtype, "name": name},
                        "attributes": _convert_references(attributes, where),
                        "depends_on": depends_on,
                    },
                    ResourceSpec,
                    source=where,
                )
            )
    return specs


def load_specs_from_text(text: str, source: str = "<string>") -> List[ResourceSpec]:
    """Parse one YAML or JSON document given as text."""
    return specs_from_document(_parse_document(text, source), source)


def _read_source(source: Source) -> tuple[str, str]:
    if isinstance(source, Path) or os.path.isfile(source):
        path = Path(source)
        try:
            return path.read_text(encoding="utf-8"), str(path)
        except OSError as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc
    if "\n" not in source and source.endswith(_DOCUMENT_SUFFIXES):
        raise ConfigError(f"Configuration file not found: {source}")
    return source, "<string>"


def load_specs(*sources: Source) -> List[ResourceSpec]:
    """
    Load and merge resource specs from files or document text.

    Each source is either a path to a YAML/JSON file or the document text
    itself.

    Args:
        *sources: Paths or document strings.

    Returns:
        List[ResourceSpec]: Every declared resource, sorted by address.

    Raises:
        ConfigError: On unreadable or malformed documents, malformed
            references, or an address declared more than once.
    """
    specs: List[ResourceSpec] = []
    for source in sources:
        text, name = _read_source(source)
        specs.extend(load_specs_from_text(text, name))
    return sorted(index_specs(specs).values(), key=lambda spec: spec.address)


__all__ = ["ResourceDocument", "load_specs", "load_specs_from_text", "specs_from_document"]

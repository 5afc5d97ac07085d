"""
converge/models/resource.py

Defines the Pydantic models describing declared resources:
 - ResourceAddress: the (type, name) identity of a resource.
 - Reference: a pointer to another resource's attribute or output.
 - ResourceSpec: the desired attributes of one resource.
 - AttributeSchema / ResourceTypeSchema: the static classification of a
   resource type's attributes (mutable vs. requires-replacement).

Attribute values are JSON-like data (str, int, float, bool, None, lists, dicts)
in which Reference objects may appear at any depth.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_serializer,
    model_validator,
)

from converge.errors import SchemaError

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_REFERENCE_PATTERN = re.compile(
    r"^\$\{([A-Za-z_][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_]*)\}$"
)


class ResourceAddress(BaseModel):
    """Unique identifier of a declared resource: (type, logical name).

    Addresses are immutable and hashable, and serialize to their textual form
    "type.name" so state documents stay readable.

    Attributes:
        type (str): The resource type, e.g. "vpc".
        name (str): The logical name, e.g. "main".
    """

    model_config = ConfigDict(frozen=True)

    type: str
    name: str

    def __init__(__pydantic_self__, type: str, name: str, **data: Any) -> None:
        super().__init__(type=type, name=name, **data)

    @model_validator(mode="before")
    @classmethod
    def accept_text(cls, value: Any) -> Any:
        """Allow 'type.name' strings wherever an address is expected."""
        if isinstance(value, str):
            parts = value.split(".")
            if len(parts) != 2:
                raise ValueError(f"Address must look like 'type.name': {value!r}")
            return {"type": parts[0], "name": parts[1]}
        return value

    @field_validator("type", "name")
    @classmethod
    def validate_part(cls, value: str) -> str:
        """Check that each part is a plain identifier."""
        if not _NAME_PATTERN.match(value):
            raise ValueError(f"Invalid address component: {value!r}")
        return value

    @model_serializer
    def _serialize(self) -> str:
        return str(self)

    @classmethod
    def parse(cls, text: str) -> ResourceAddress:
        """Parse a 'type.name' string into a ResourceAddress."""
        return cls.model_validate(text)

    def __str__(self) -> str:
        return f"{self.type}.{self.name}"

    def __lt__(self, other: ResourceAddress) -> bool:
        return str(self) < str(other)


class Reference(BaseModel):
    """A reference to an attribute or output of another resource.

    Written in configuration documents as '${type.name.attribute}'.
    """

    model_config = ConfigDict(frozen=True)

    address: ResourceAddress
    attribute: str

    @classmethod
    def parse(cls, text: str) -> Optional[Reference]:
        """Return a Reference if `text` is exactly '${type.name.attr}', else None."""
        match = _REFERENCE_PATTERN.match(text)
        if match is None:
            return None
        rtype, rname, attribute = match.groups()
        return cls(address=ResourceAddress(rtype, rname), attribute=attribute)

    def __str__(self) -> str:
        return f"${{{self.address}.{self.attribute}}}"


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference found in a (possibly nested) attribute value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def map_references(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Return a copy of `value` with each Reference replaced by `resolve(ref)`."""
    if isinstance(value, Reference):
        return resolve(value)
    if isinstance(value, dict):
        return {key: map_references(item, resolve) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [map_references(item, resolve) for item in value]
    return value


def encode_references(value: Any) -> Any:
    """Replace each Reference with its textual form, for JSON documents."""
    return map_references(value, str)


def decode_references(value: Any) -> Any:
    """Inverse of encode_references: turn '${type.name.attr}' strings back into References."""
    if isinstance(value, str):
        reference = Reference.parse(value)
        return reference if reference is not None else value
    if isinstance(value, dict):
        return {key: decode_references(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_references(item) for item in value]
    return value


class ResourceSpec(BaseModel):
    """The declared, desired state of one resource.

    Attributes:
        address (ResourceAddress): The resource identity.
        attributes (Dict[str, Any]): Desired attribute values, possibly
            containing Reference objects.
        depends_on (List[ResourceAddress]): Extra ordering dependencies that
            are not expressed through references.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    address: ResourceAddress
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[ResourceAddress] = Field(default_factory=list)

    def references(self) -> List[Reference]:
        """Every Reference in this spec's attributes, in declaration order."""
        return [ref for value in self.attributes.values() for ref in iter_references(value)]

    def dependency_addresses(self) -> List[ResourceAddress]:
        """Addresses this resource must be ordered after (references + depends_on)."""
        seen: Dict[ResourceAddress, None] = {}
        for ref in self.references():
            seen.setdefault(ref.address, None)
        for address in self.depends_on:
            seen.setdefault(address, None)
        return list(seen)


class AttributeSchema(BaseModel):
    """Static classification of one attribute of a resource type.

    Attributes:
        name (str): The attribute name.
        mutable (bool): True if the provider can change it in place. Attributes
            not explicitly marked mutable require replacement.
        required (bool): True if every spec must set it.
        sensitive (bool): True if the value must be masked in plan output.
    """

    name: str
    mutable: bool = False
    required: bool = False
    sensitive: bool = False


class ResourceTypeSchema(BaseModel):
    """Describes the attributes and lifecycle behaviour of a resource type.

    Attributes:
        type (str): The resource type name.
        attributes (Dict[str, AttributeSchema]): Declarable attributes.
        outputs (List[str]): Provider-computed values that may be referenced.
        create_before_destroy (bool): When replacing, create the new object
            before destroying the old one.
    """

    type: str
    attributes: Dict[str, AttributeSchema] = Field(default_factory=dict)
    outputs: List[str] = Field(default_factory=list)
    create_before_destroy: bool = False

    @classmethod
    def build(
        cls,
        type: str,
        *,
        mutable: Optional[List[str]] = None,
        replace: Optional[List[str]] = None,
        required: Optional[List[str]] = None,
        sensitive: Optional[List[str]] = None,
        outputs: Optional[List[str]] = None,
        create_before_destroy: bool = False,
    ) -> ResourceTypeSchema:
        """Convenience constructor from plain attribute name lists.

        Args:
            type: The resource type name.
            mutable: Attributes that can be updated in place.
            replace: Attributes whose change forces replacement.
            required: Attributes (from either list) that every spec must set.
            sensitive: Attributes masked in plan output.
            outputs: Computed values assigned by the provider.
            create_before_destroy: Replacement ordering flag.

        Returns:
            ResourceTypeSchema: The assembled schema.
        """
        required_set = set(required or [])
        sensitive_set = set(sensitive or [])
        attributes: Dict[str, AttributeSchema] = {}
        for name in replace or []:
            attributes[name] = AttributeSchema(name=name, mutable=False)
        for name in mutable or []:
            attributes[name] = AttributeSchema(name=name, mutable=True)
        for name, attr in attributes.items():
            attr.required = name in required_set
            attr.sensitive = name in sensitive_set
        return cls(
            type=type,
            attributes=attributes,
            outputs=list(outputs or []),
            create_before_destroy=create_before_destroy,
        )

    def is_mutable(self, attribute: str) -> bool:
        """True only for attributes explicitly classified as mutable."""
        schema = self.attributes.get(attribute)
        return schema is not None and schema.mutable

    def is_sensitive(self, attribute: str) -> bool:
        schema = self.attributes.get(attribute)
        return schema is not None and schema.sensitive

    def can_reference(self, attribute: str) -> bool:
        """True if `attribute` is a declared attribute or computed output."""
        return attribute in self.attributes or attribute in self.outputs

    def validate_spec(self, spec: ResourceSpec) -> None:
        """Check a spec's attribute names against this schema.

        Raises:
            SchemaError: If an attribute is unknown or a required one is missing.
        """
        address = str(spec.address)
        for name in sorted(spec.attributes):
            if name not in self.attributes:
                raise SchemaError(
                    f"unknown attribute '{name}' for resource type '{self.type}'",
                    address,
                    name,
                )
        for name, attr in sorted(self.attributes.items()):
            if attr.required and spec.attributes.get(name) is None:
                raise SchemaError(
                    f"missing required attribute '{name}'", address, name
                )


__all__ = [
    "ResourceAddress",
    "Reference",
    "ResourceSpec",
    "AttributeSchema",
    "ResourceTypeSchema",
    "decode_references",
    "encode_references",
    "iter_references",
    "map_references",
]

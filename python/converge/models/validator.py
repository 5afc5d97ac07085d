"""
converge/models/validator.py

Defines a utility function for validating loaded documents against
a pydantic-based type using TypeAdapter.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

from converge.errors import ConfigError

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T], source: str = "document") -> T:
    """
    Validates that a given Python object conforms to the expected pydantic-based type.

    Args:
        obj (Any): The object to validate.
        expected_type (Type[T]): The type (pydantic or otherwise) to validate against.
        source (str): Where the object came from, for the error message.

    Returns:
        T: The validated object, cast to the expected type.

    Raises:
        ConfigError: If validation fails.
    """
    try:
        adapter = TypeAdapter(expected_type)
        return adapter.validate_python(obj)
    except ValidationError as e:
        raise ConfigError(f"Invalid {source}: {e}") from e

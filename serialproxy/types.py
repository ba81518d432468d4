"""Advanced types."""

from typing import Type, TypeVar

AnyType = TypeVar("AnyType")
ClassType = TypeVar("ClassType", bound=Type)

"""Common API response schemas."""

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Consistent JSON envelope for API responses."""

    data: T


class CamelModel(BaseModel):
    """Request/response model exchanged with camelCase JSON clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

"""
Base Schema Classes for Pydantic Models

RULE: All schemas that read from ORM rows (``from_attributes=True``) inherit
from BaseResponseSchema; service inputs inherit from BaseCreateSchema.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for schemas built from ORM models or returned by services.

    UUIDs, Decimals and datetimes serialize to strings in JSON mode.
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for service input schemas.

    Unknown fields are ignored so callers can pass through richer payloads.
    """
    model_config = ConfigDict(
        extra='ignore',
    )

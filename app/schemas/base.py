"""
Base Schema Classes for Pydantic Models

The public API speaks camelCase; Python code uses snake_case. Alias translation
happens here and only here:

- Output: every field is serialized under its camelCase alias.
- Input: both the camelCase alias and the snake_case field name are accepted.
  Legacy names (e.g. `acId`, `preferredDate`) are declared per field with
  `validation_alias=AliasChoices(...)`.

RULE: All response schemas that use `from_attributes=True` MUST inherit from BaseResponseSchema.
"""

from datetime import datetime, timezone
from typing import Annotated, Optional
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Root of every API schema: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        # Allow population by field name or alias
        populate_by_name=True,
    )


class BaseResponseSchema(CamelModel):
    """
    Base class for all response schemas that read from ORM models.

    Features:
    - Enables from_attributes for ORM compatibility
    - UUIDs and datetimes serialized as strings in JSON

    Usage:
        class CouponResponse(BaseResponseSchema):
            id: UUID
            code: str
            valid_until: datetime
    """
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class BaseCreateSchema(CamelModel):
    """
    Base class for create/input schemas.

    Unknown fields are ignored (forward compatibility with older clients).
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='ignore',
    )


class BaseUpdateSchema(BaseCreateSchema):
    """
    Base class for update/patch schemas.

    All fields are optional by default for partial updates; use
    `model_dump(exclude_unset=True)` to get only the supplied ones.
    """


# Type aliases for common UUID patterns
UUIDField = UUID
OptionalUUID = Optional[UUID]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Client datetimes without an offset are taken as UTC
UTCDatetime = Annotated[datetime, AfterValidator(_as_utc)]

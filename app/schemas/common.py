"""Response envelope shared by every endpoint."""
from typing import Generic, Optional, TypeVar

from app.schemas.base import CamelModel

T = TypeVar("T")


class APIResponse(CamelModel, Generic[T]):
    """
    Success envelope: {"success": true, "message": "...", "data": ...}

    Errors use the shape produced by AppError.to_dict() instead.
    """
    success: bool = True
    message: str = "OK"
    data: Optional[T] = None


class ListResponse(CamelModel, Generic[T]):
    """Success envelope for collections, with the unpaginated total."""
    success: bool = True
    message: str = "OK"
    data: list[T]
    total: int


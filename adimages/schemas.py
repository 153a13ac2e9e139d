"""Pydantic schemas for request/response validation."""
from pydantic import BaseModel
from typing import Any, Dict, List, Optional


class AdImageOut(BaseModel):
    """Ad image as read back by listing/detail services."""
    id: int
    url: str
    is_main: bool
    order: int
    size_bytes: int
    width: int
    height: int
    quality: int

    @classmethod
    def from_record(cls, image) -> "AdImageOut":
        return cls(
            id=image.id,
            url=image.path,
            is_main=image.is_main,
            order=image.order,
            size_bytes=image.size_bytes,
            width=image.width,
            height=image.height,
            quality=image.quality,
        )


class AvatarOut(BaseModel):
    """Avatar slot of an owner."""
    exists: bool
    avatar_url: Optional[str] = None


class SkippedFileOut(BaseModel):
    filename: Optional[str] = None
    reason: str


class AdImagesUploadOut(BaseModel):
    """Result of a create batch: stored urls plus the entries that were skipped."""
    urls: List[str]
    skipped: List[SkippedFileOut] = []


class SetMainRequest(BaseModel):
    image_id: int


class SetMainResponse(BaseModel):
    changed: bool


class ReorderRequest(BaseModel):
    image_ids: List[int]  # Desired order; ids left out keep their previous order


class DeleteImagesResponse(BaseModel):
    deleted_ids: List[int]


class DeleteAllImagesResponse(BaseModel):
    deleted_count: int


class ConvergenceOut(BaseModel):
    """Preview endpoint response."""
    size_bytes: int
    budget_bytes: int
    over_budget: bool
    width: int
    height: int
    quality: int
    iterations: int


class ErrorOut(BaseModel):
    error: str
    code: str
    details: Dict[str, Any] = {}
    retryable: bool = False

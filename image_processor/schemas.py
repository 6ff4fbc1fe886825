"""Pydantic schemas for API responses and bus messages."""
import time
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional


class ImageOut(BaseModel):
    """Image record as returned by the status endpoint."""
    id: str
    filename: str
    file_size: int
    raw_object_key: str = Field(validation_alias="raw_image_object_key")
    processed_object_key: Optional[str] = Field(default=None, validation_alias="processed_image_object_key")
    actions: List[str]
    status: str

    class Config:
        from_attributes = True
        populate_by_name = True

    @field_validator("processed_object_key")
    @classmethod
    def empty_key_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class UploadResponse(BaseModel):
    """Upload endpoint response."""
    id: str
    status: str
    message: str


class MessageResponse(BaseModel):
    """Plain message response (delete)."""
    message: str


class TaskMessage(BaseModel):
    """Task published on the bus, one per upload."""
    image_id: str
    actions: List[str]
    timestamp: int = Field(default_factory=lambda: int(time.time()))

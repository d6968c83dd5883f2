"""File and blob value types shared by the content and revision stores."""

from uuid import UUID

from pydantic import BaseModel, Field


class BlobRef(BaseModel):
    """Reference to a content-addressed FileBlob row."""

    id: UUID
    sha256: str
    size_bytes: int
    storage_key: str


class UploadedFile(BaseModel):
    """A file arriving in a fresh upload (path + UTF-8 text content)."""

    path: str = Field(..., min_length=1)
    content: str


class StoredFile(BaseModel):
    """A revision file dereferenced back to its content."""

    path: str
    content: str
    language: str
    is_test_file: bool
    sha256: str

"""
Pydantic schemas for BugSplat API rows and MCP tool responses.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CrashInfo(BaseModel):
    """The parts of a crash row the attachment subsystem needs."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int = Field(description="Crash id")
    dumpfile: Optional[str] = Field(None, description="Signed URL of the attachment bundle")
    dumpfile_size: int = Field(0, alias="dumpfileSize", description="Bundle size in bytes")


class AttachmentListing(BaseModel):
    """Files extracted from one crash's bundle."""
    database: str = Field(description="BugSplat database name")
    crash_id: int = Field(description="Crash id")
    files: List[str] = Field(description="Attachment file names")


class ReapResult(BaseModel):
    """Outcome of one cache reaping pass."""
    deleted: List[str] = Field(default_factory=list, description="Entries removed")
    kept: List[str] = Field(default_factory=list, description="Entries within the retention window")
    failed: List[str] = Field(default_factory=list, description="Entries that could not be removed")


class ErrorResponse(BaseModel):
    """Error response."""
    error: str = Field(description="Error message")
    error_type: str = Field("error", description="Machine-readable error code")
    details: Optional[str] = Field(None, description="Additional error details")

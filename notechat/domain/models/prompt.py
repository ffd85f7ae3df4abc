from typing import Optional
from pydantic import BaseModel, Field


class PromptRecord(BaseModel):
    """A user-authored system prompt stored as one markdown file"""
    title: str = Field(description="Unique key, the file basename")
    content: str
    created_ms: int = 0
    modified_ms: int = 0
    last_used_ms: int = 0


class MigrationResult(BaseModel):
    """Outcome of migrating the legacy single-string prompt setting"""
    migrated: bool
    title: Optional[str] = None
    error: Optional[str] = None

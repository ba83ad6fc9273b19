"""Pydantic models for webhook deduplication and maintenance results."""
from pydantic import BaseModel


class MarkProcessedResult(BaseModel):
    """
    Outcome of recording a webhook.

    already_processed=True means another delivery got there first; event_id
    is then the surviving record's id.
    """
    already_processed: bool
    event_id: int


class CleanupResult(BaseModel):
    deleted: int
    has_more: bool

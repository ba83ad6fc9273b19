"""
Caller identity resolved at the HTTP boundary and passed explicitly into
the service layer.
"""
from typing import Optional
from pydantic import BaseModel, Field


class Identity(BaseModel):
    """Claims from the identity provider. subject is its stable user id."""
    subject: str = Field(min_length=1)
    email: str = ""
    name: Optional[str] = None

"""
Request-boundary dependencies.

The identity provider sits in front of the API and forwards the verified
subject and profile claims as headers; they are turned into an Identity
here and passed explicitly into the service layer.
"""
from typing import Optional

from fastapi import Header, Request

from ..models.identity import Identity


async def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
) -> Optional[Identity]:
    """Identity from the forwarded claims, or None for anonymous requests."""
    if not x_user_id:
        return None
    return Identity(subject=x_user_id, email=x_user_email or "", name=x_user_name)


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "unknown")

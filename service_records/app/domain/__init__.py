"""
Domain types for the Records service.

Caller identity resolution and the pydantic models for record payloads.
"""

from .identity import Anonymous, Authenticated, Identity, IdentityResolver

__all__ = [
    "Anonymous",
    "Authenticated",
    "Identity",
    "IdentityResolver",
]

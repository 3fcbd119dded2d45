"""Auth collaborator package."""

from travory.services.auth.provider import (
    AuthProvider,
    NotAuthenticatedError,
    StaticAuthProvider,
)

__all__ = [
    "AuthProvider",
    "NotAuthenticatedError",
    "StaticAuthProvider",
]

"""
Auth Collaborator

The core never signs anyone in. It only asks "who is calling?" and refuses
every write when nobody is.
"""

from abc import ABC, abstractmethod
from typing import Optional


class NotAuthenticatedError(Exception):
    """No caller id is available; writes are blocked."""
    pass


class AuthProvider(ABC):
    """Supplies the id of the signed-in caller."""

    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        """The caller id, or None when signed out."""
        pass

    def require_user_id(self) -> str:
        """
        The caller id.

        Raises:
            NotAuthenticatedError: If nobody is signed in
        """
        user_id = self.current_user_id()
        if not user_id:
            raise NotAuthenticatedError("No signed-in user")
        return user_id


class StaticAuthProvider(AuthProvider):
    """Auth provider with a fixed (switchable) caller, for tests and scripts."""

    def __init__(self, user_id: Optional[str] = None):
        self._user_id = user_id

    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        self._user_id = user_id

    def sign_out(self) -> None:
        self._user_id = None

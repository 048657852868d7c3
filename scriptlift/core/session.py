"""Explicit session context: who (if anyone) is signed in.

WHY: Whether a user is signed in decides which storage backend holds
their projects — on-device when anonymous, networked when signed in.
Passing that decision around as an object (instead of reading a global)
makes the choice visible at construction time and easy to vary in tests.

HOW: SessionContext wraps an optional User. Backend selection lives in
scriptlift.storage.select_backend(); this module only describes the
session.

RULES:
- A session is handed to ScriptLift; signing in is not ScriptLift's job
- access_token is the bearer token the networked backend sends
- The session is fixed for the lifetime of a runtime; switching users
  means building a new runtime
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from scriptlift.config import load_session_credentials


@dataclass(frozen=True)
class User:
    """An authenticated user."""

    id: str
    access_token: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class SessionContext:
    """The signed-in user, if any."""

    user: Optional[User] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def mode(self) -> str:
        """'cloud' when signed in, 'local' otherwise."""
        return "cloud" if self.is_authenticated else "local"

    @classmethod
    def anonymous(cls) -> SessionContext:
        return cls(user=None)

    @classmethod
    def from_env(cls) -> SessionContext:
        """Build a session from SCRIPTLIFT_USER_ID / SCRIPTLIFT_ACCESS_TOKEN."""
        creds = load_session_credentials()
        if creds is None:
            return cls.anonymous()
        user_id, token = creds
        return cls(user=User(id=user_id, access_token=token))

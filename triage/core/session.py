"""The signed-in user as seen by the engine.

Authentication flows live outside this package; whatever performs them hands
the engine a Session and signs it in or out.
"""

from __future__ import annotations

from dataclasses import dataclass

from triage.core.errors import NotAuthenticatedError


@dataclass
class Session:
    user_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    def sign_in(self, user_id: str) -> None:
        self.user_id = user_id

    def sign_out(self) -> None:
        self.user_id = None

    def require_user(self) -> str:
        if not self.user_id:
            raise NotAuthenticatedError()
        return self.user_id

"""Username/password verification helpers."""

import hmac
from typing import Callable, Mapping

UserPassAuthFn = Callable[[str, str], bool]


def make_user_pass_auth(users: Mapping[str, str]) -> UserPassAuthFn:
    """Build a ``(username, password) -> bool`` predicate over a fixed user table."""
    table = {str(user): str(password).encode() for user, password in users.items()}

    def verify(username: str, password: str) -> bool:
        expected = table.get(username)
        if expected is None:
            return False
        return hmac.compare_digest(password.encode(), expected)

    return verify

"""Voter identity and admin authorization.

Web votes arrive with ``X-Voter`` and ``X-Voter-Token``; the token is the
hex HMAC-SHA256 of the lowercase handle under the shared identity secret,
issued by the OAuth front end. Chat-bot votes authenticate the bot itself
with ``X-Bot-Key`` and name the voter in the request body.
"""

import hashlib
import hmac

from clipvote.errors import Forbidden, Unauthorized
from clipvote.middleware.validation import validate_voter


def sign_voter(secret: str, voter: str) -> str:
    return hmac.new(secret.encode(), voter.encode(), hashlib.sha256).hexdigest()


def _matches(expected: str, supplied: str | None) -> bool:
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode(), supplied.encode())


class IdentityProvider:
    def __init__(self, identity_secret: str = "", bot_key: str = "", admin_key: str = ""):
        self._identity_secret = identity_secret
        self._bot_key = bot_key
        self._admin_key = admin_key

    def web_voter(self, voter: str | None, token: str | None) -> str | None:
        """Return the verified handle, or None when no identity was supplied."""
        if not voter:
            return None
        handle, err = validate_voter(voter)
        if err:
            raise Unauthorized(err)
        if not self._identity_secret:
            raise Unauthorized("Web voting is not configured")
        if not _matches(sign_voter(self._identity_secret, handle), token):
            raise Unauthorized("Invalid voter token")
        return handle

    def bot_voter(self, bot_key: str | None, voter: str | None) -> str:
        if not _matches(self._bot_key, bot_key):
            raise Unauthorized("Invalid bot key")
        handle, err = validate_voter(voter or "")
        if err:
            raise Unauthorized(err)
        return handle

    def is_privileged(self, admin_key: str | None) -> bool:
        return _matches(self._admin_key, admin_key)

    def require_admin(self, admin_key: str | None) -> None:
        if not admin_key:
            raise Unauthorized("Admin key required")
        if not self.is_privileged(admin_key):
            raise Forbidden("Super admin access required")

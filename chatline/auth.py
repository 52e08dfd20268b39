"""
Authentication gate: bearer token -> user identity.

Tokens are configured statically:

    auth:
      tokens:
        - token: ${CHATLINE_API_TOKEN}
          user_id: local

Entries with an empty token (an unset env var) are ignored, so a deployment
without any token rejects every request.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from chatline.errors import Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class User:
    id: str


class TokenAuthenticator:
    """Maps bearer tokens to users."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = {t: uid for t, uid in tokens.items() if t and uid}

    @classmethod
    def from_config(cls, cfg: dict) -> "TokenAuthenticator":
        entries = (cfg.get("auth", {}) or {}).get("tokens", []) or []
        tokens = {}
        for entry in entries:
            token = str(entry.get("token") or "")
            user_id = str(entry.get("user_id") or "")
            if token and user_id:
                tokens[token] = user_id
        if not tokens:
            logger.warning("No API tokens configured; every request will be rejected")
        return cls(tokens)

    def authenticate(self, token: str | None) -> User:
        if not token:
            raise Unauthenticated()
        for known, user_id in self._tokens.items():
            if secrets.compare_digest(token.encode(), known.encode()):
                return User(id=user_id)
        raise Unauthenticated()

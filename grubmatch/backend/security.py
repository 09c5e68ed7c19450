"""Security helpers: leader tokens and signed member bindings."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass

from itsdangerous import BadData, URLSafeSerializer

TOKEN_BYTES = 24
BINDING_SALT = "member-bindings"


def generate_token() -> str:
    """Generate a URL-safe secret used as a group's leader token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def tokens_match(presented: str | None, stored: str | None) -> bool:
    """Exact, constant-time comparison. No case folding, no prefix matching."""
    if not presented or not stored:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))


@dataclass(frozen=True)
class MemberBindings:
    """Signed client-held mapping of group id to member id.

    The server keeps no record of who holds which binding; a token is trusted
    only when its HMAC-SHA256 signature verifies against `secret`. Every
    failure mode (missing, truncated, re-signed, wrong shape) reads as
    "no binding".
    """

    secret: str

    @property
    def serializer(self) -> URLSafeSerializer:
        return URLSafeSerializer(self.secret, salt=BINDING_SALT, signer_kwargs={"digest_method": hashlib.sha256})

    def sign(self, mapping: dict[str, str]) -> str:
        return self.serializer.dumps(mapping)

    def load(self, token: str | None) -> dict[str, str] | None:
        if not token:
            return None
        try:
            mapping = self.serializer.loads(token)
        except BadData:
            return None
        if not isinstance(mapping, dict):
            return None
        if not all(isinstance(key, str) and isinstance(value, str) for key, value in mapping.items()):
            return None
        return mapping

    def bind(self, group_id: str, member_id: str, token: str | None = None) -> str:
        mapping = dict(self.load(token) or {})
        mapping[group_id] = member_id
        return self.sign(mapping)

    def resolve(self, token: str | None, group_id: str) -> str | None:
        mapping = self.load(token)
        if mapping is None:
            return None
        return mapping.get(group_id)

    def verify(self, claimed_member_id: str | None, group_id: str, token: str | None) -> bool:
        if not claimed_member_id:
            return False
        resolved = self.resolve(token, group_id)
        if resolved is None:
            return False
        return hmac.compare_digest(resolved.encode("utf-8"), claimed_member_id.encode("utf-8"))

from __future__ import annotations
import base64, hashlib, hmac, json, time
from dataclasses import dataclass
from typing import Iterable, Tuple

SCOPE_READ = "chat:read"
SCOPE_WRITE = "chat:write"
DEFAULT_SCOPES: Tuple[str, ...] = (SCOPE_READ, SCOPE_WRITE)


class InvalidToken(Exception):
    pass


@dataclass(frozen=True)
class TokenClaims:
    identity: str
    expires_at: int
    scopes: Tuple[str, ...]


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class TokenSigner:
    """Signed bearer tokens: ``base64url(claims).hex(hmac_sha256(claims))``.

    The claims carry the identity, an expiry timestamp and the scopes the token
    grants, so a read-only token cannot be used to post.
    """

    def __init__(self, secret: str) -> None:
        self._key = secret.encode("utf-8")

    def _sign(self, body: str) -> str:
        return hmac.new(self._key, body.encode("ascii"), hashlib.sha256).hexdigest()

    def issue(
        self,
        identity: str,
        scopes: Iterable[str] = DEFAULT_SCOPES,
        ttl_seconds: int = 3600,
        now: int | None = None,
    ) -> str:
        exp = int(now if now is not None else time.time()) + int(ttl_seconds)
        claims = {"sub": identity, "exp": exp, "scp": sorted(set(scopes))}
        body = _b64encode(
            json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8")
        )
        return f"{body}.{self._sign(body)}"

    def verify(
        self, token: str, scope: str | None = None, now: int | None = None
    ) -> TokenClaims:
        try:
            body, sig = token.rsplit(".", 1)
        except (AttributeError, ValueError):
            raise InvalidToken("malformed token")
        try:
            body.encode("ascii")
        except UnicodeEncodeError:
            raise InvalidToken("malformed token")
        # Timing-safe compare over bytes; sig may carry arbitrary characters
        if not hmac.compare_digest(
            self._sign(body).encode("ascii"), sig.encode("utf-8", "replace")
        ):
            raise InvalidToken("bad signature")
        try:
            claims = json.loads(_b64decode(body))
            identity = str(claims["sub"])
            exp = int(claims["exp"])
            scopes = tuple(claims.get("scp") or ())
        except (ValueError, KeyError, TypeError):
            raise InvalidToken("malformed claims")
        if exp < int(now if now is not None else time.time()):
            raise InvalidToken("token expired")
        if scope is not None and scope not in scopes:
            raise InvalidToken(f"token lacks scope {scope}")
        return TokenClaims(identity=identity, expires_at=exp, scopes=scopes)

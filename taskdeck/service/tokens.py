from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional

from taskdeck.config import Settings
from taskdeck.logging import get_logger
from taskdeck.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

DEFAULT_EXPIRATION_SECONDS = 3600

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def expiration_seconds(ttl: str) -> int:
    """Convert a TTL string such as ``"15m"`` or ``"7d"`` into seconds.

    The last character is the unit and the rest the amount. An unknown unit or
    an unparsable amount yields one hour.
    """
    raw = (ttl or "").strip()
    if len(raw) < 2:
        return DEFAULT_EXPIRATION_SECONDS
    unit = raw[-1]
    multiplier = _UNIT_SECONDS.get(unit)
    if multiplier is None:
        return DEFAULT_EXPIRATION_SECONDS
    try:
        amount = int(raw[:-1])
    except ValueError:
        return DEFAULT_EXPIRATION_SECONDS
    return amount * multiplier


@dataclass
class TokenPayload:
    """Identity claims carried inside signed tokens.

    ``permissions`` is a snapshot taken at issuance. Refresh tokens never carry
    it; access tokens always do.
    """

    user_id: int
    email: str
    role: str
    session_id: int
    permissions: Optional[List[str]] = None
    token_type: str = "access"
    expires_at: Optional[int] = None
    issued_at: Optional[int] = None
    jti: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_claims(self) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "user_id": self.user_id,
            "email": self.email,
            "role": self.role,
            "session_id": self.session_id,
        }
        if self.permissions is not None:
            claims["permissions"] = list(self.permissions)
        return claims

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "TokenPayload":
        known = {
            "user_id", "email", "role", "session_id", "permissions",
            "token_type", "exp", "iat", "jti",
        }
        try:
            permissions = claims.get("permissions")
            return cls(
                user_id=int(claims["user_id"]),
                email=str(claims["email"]),
                role=str(claims["role"]),
                session_id=int(claims["session_id"]),
                permissions=list(permissions) if permissions is not None else None,
                token_type=str(claims.get("token_type", "access")),
                expires_at=claims.get("exp"),
                issued_at=claims.get("iat"),
                jti=claims.get("jti"),
                extra={k: v for k, v in claims.items() if k not in known},
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalidError("token payload is malformed") from exc


class TokenCodec:
    """HS256 compact token signing and verification."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.access_ttl_seconds = expiration_seconds(settings.jwt_expires_in)
        self.refresh_ttl_seconds = expiration_seconds(settings.jwt_refresh_expires_in)
        self._leeway = max(0, int(settings.jwt_leeway_seconds))

    def _now(self) -> float:
        return time.time()

    @property
    def access_expires_in(self) -> int:
        """Access-token lifetime reported to clients as ``expires_in``."""
        return self.access_ttl_seconds

    def issue_access_token(
        self, payload: TokenPayload, *, ttl_seconds: Optional[int] = None
    ) -> str:
        claims = payload.to_claims()
        claims.setdefault("permissions", [])
        return self._issue(claims, "access", ttl_seconds or self.access_ttl_seconds)

    def issue_refresh_token(
        self, payload: TokenPayload, *, ttl_seconds: Optional[int] = None
    ) -> str:
        claims = payload.to_claims()
        claims.pop("permissions", None)
        return self._issue(claims, "refresh", ttl_seconds or self.refresh_ttl_seconds)

    def verify_access_token(self, token: str) -> TokenPayload:
        return TokenPayload.from_claims(self._verify(token, "access"))

    def verify_refresh_token(self, token: str) -> TokenPayload:
        return TokenPayload.from_claims(self._verify(token, "refresh"))

    def decode_unverified(self, token: str) -> dict[str, Any]:
        """Return the raw claims without any signature or expiry check."""
        try:
            _, payload_b64, _ = token.split(".")
            return json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            raise TokenInvalidError("token is malformed") from exc

    def _issue(self, claims: dict[str, Any], token_type: str, ttl_seconds: int) -> str:
        now = int(self._now())
        body = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
        return self._encode_jwt(body)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _verify(self, token: str, expected_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalidError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("token is malformed")

        # Only HS256 is accepted; anything else is an algorithm-confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("token is malformed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("token algorithm not accepted")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # bytes, since compare_digest rejects non-ASCII str
        received_sig = sig_b64.encode("utf-8", "surrogateescape")
        if not hmac.compare_digest(expected_sig.encode(), received_sig):
            raise TokenInvalidError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("token is malformed")
        if not isinstance(payload, dict):
            raise TokenInvalidError("token is malformed")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalidError("token audience mismatch")
        if payload.get("token_type") != expected_type:
            raise TokenInvalidError(f"{expected_type} token required")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("token has no expiry")
        if exp_ts <= self._now() - self._leeway:
            raise TokenExpiredError("token expired")
        return payload

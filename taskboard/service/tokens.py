from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from taskboard.logging import get_logger
from taskboard.storage.models import User

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    email: str
    role: str
    jti: str
    iat: int
    exp: int


class AccessTokenSigner:
    """Issue and verify short-lived HS256 access tokens.

    Verification is stateless: nothing about access tokens is stored, so a
    token stays valid until ``exp`` even after logout.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta,
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        if not secret:
            raise ValueError("access token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self.leeway = leeway

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, user: User, *, now: Optional[float] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "token_type": _ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + int(self.ttl.total_seconds()),
        }
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str, *, now: Optional[float] = None) -> Optional[AccessClaims]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            logger.debug("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            logger.debug("jwt_issuer_mismatch")
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            logger.debug("jwt_audience_mismatch")
            return None
        if payload.get("token_type") != _ACCESS_TOKEN_TYPE:
            return None
        try:
            exp_ts = int(payload["exp"])
            iat_ts = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return None
        current = now if now is not None else time.time()
        if exp_ts <= current - self.leeway.total_seconds():
            logger.debug("jwt_expired", sub=payload.get("sub"))
            return None
        sub = payload.get("sub")
        if not sub:
            return None
        return AccessClaims(
            sub=str(sub),
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "")),
            jti=str(payload.get("jti", "")),
            iat=iat_ts,
            exp=exp_ts,
        )

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

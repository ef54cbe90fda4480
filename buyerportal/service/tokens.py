from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from buyerportal.config import Settings
from buyerportal.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class SessionClaims:
    """Identity carried by an internal session token."""

    user_id: str
    email: str
    role: str
    company_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SessionClaims":
        company_id = payload.get("company_id")
        return cls(
            user_id=str(payload["sub"]),
            email=payload.get("email", ""),
            role=payload.get("role", "buyer"),
            company_id=str(company_id) if company_id is not None else None,
        )


class SessionTokenIssuer:
    """Mints and verifies HS256 access/refresh tokens.

    Tokens are self-contained: nothing is looked up server-side to verify
    one, so a token stays valid until ``exp`` unless the caller layers its
    own revocation check on ``iat``.
    """

    def __init__(self, settings: Settings, *, leeway_seconds: int = 120) -> None:
        self.settings = settings
        self.leeway_seconds = leeway_seconds

    def _secret_for(self, token_type: str) -> bytes:
        if token_type == REFRESH:
            return self.settings.jwt_refresh_secret.encode()
        return self.settings.jwt_secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        return self._encode_segment(
            hmac.new(
                self._secret_for(token_type), signing_input.encode(), hashlib.sha256
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
        return f"{signing_input}.{self._sign(signing_input, payload['token_type'])}"

    def _decode_jwt(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject alg=none and friends before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        if not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.leeway_seconds:
            return None
        return payload

    def _payload(
        self, claims: SessionClaims, token_type: str, ttl_minutes: int, now: float
    ) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": claims.user_id,
            "email": claims.email,
            "company_id": claims.company_id,
            "role": claims.role,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            # Millisecond floor so a token never appears newer than it is
            "iat": math.floor(now * 1000) / 1000,
            "exp": int(now + ttl_minutes * 60),
        }

    def issue_access(self, claims: SessionClaims, *, now: Optional[float] = None) -> str:
        now = time.time() if now is None else now
        return self._encode_jwt(
            self._payload(claims, ACCESS, self.settings.access_token_ttl_minutes, now)
        )

    def issue_refresh(self, claims: SessionClaims, *, now: Optional[float] = None) -> str:
        now = time.time() if now is None else now
        return self._encode_jwt(
            self._payload(claims, REFRESH, self.settings.refresh_token_ttl_minutes, now)
        )

    def issue_pair(
        self, claims: SessionClaims, *, now: Optional[float] = None
    ) -> dict[str, str]:
        now = time.time() if now is None else now
        return {
            "access_token": self.issue_access(claims, now=now),
            "refresh_token": self.issue_refresh(claims, now=now),
            "token_type": "bearer",
        }

    def decode_access(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token, ACCESS)

    def decode_refresh(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token, REFRESH)

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from chatgateway.config import Settings
from chatgateway.logging import get_logger
from chatgateway.service.errors import AuthenticationError

logger = get_logger(__name__)

_JOSE_HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _unb64url(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _compact_json(obj: dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode()


def _json_segment(segment: str) -> Optional[dict[str, Any]]:
    try:
        decoded = json.loads(_unb64url(segment))
    except (ValueError, TypeError):
        return None
    return decoded if isinstance(decoded, dict) else None


@dataclass
class AuthContext:
    account_id: str
    token_id: Optional[str] = None


class AuthService:
    """Issues and verifies the HS256 bearer tokens gateway clients present.

    ``sub`` carries the account id. Issuer and audience must match settings,
    and expiry is honoured with ``clock_skew_leeway`` seconds of slack.
    """

    def __init__(self, settings: Settings, *, clock_skew_leeway: int = 120) -> None:
        self.settings = settings
        self.clock_skew_leeway = clock_skew_leeway

    def _signature(self, signed_part: str) -> str:
        mac = hmac.new(self.settings.jwt_secret.encode(), signed_part.encode(), hashlib.sha256)
        return _b64url(mac.digest())

    def _encode_jwt(self, claims: dict[str, Any]) -> str:
        signed_part = ".".join((_b64url(_compact_json(_JOSE_HEADER)), _b64url(_compact_json(claims))))
        return f"{signed_part}.{self._signature(signed_part)}"

    def _audience_matches(self, aud: Any) -> bool:
        expected = self.settings.jwt_audience
        return expected in aud if isinstance(aud, list) else aud == expected

    def _unexpired(self, exp: Any) -> bool:
        try:
            deadline = float(exp)
        except (TypeError, ValueError):
            return False
        return deadline + self.clock_skew_leeway > time.time()

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Claims of a token this service would accept, else None."""
        segments = token.split(".")
        if len(segments) != 3:
            return None
        header_part, claims_part, signature = segments

        header = _json_segment(header_part)
        # only HS256 is accepted, which also rules out alg=none
        if header is None or header.get("alg") != "HS256":
            logger.warning("bearer_token_bad_header")
            return None
        expected = self._signature(f"{header_part}.{claims_part}")
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            return None

        claims = _json_segment(claims_part)
        if claims is None:
            logger.warning("bearer_token_bad_claims")
            return None
        if claims.get("iss") != self.settings.jwt_issuer:
            return None
        if not self._audience_matches(claims.get("aud")):
            return None
        if not self._unexpired(claims.get("exp")):
            return None
        return claims

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        scheme, _, credentials = (header or "").partition(" ")
        if scheme.lower() != "bearer":
            return None
        return credentials.strip() or None

    def issue_access_token(self, account_id: str, *, ttl_minutes: Optional[int] = None) -> str:
        if ttl_minutes is None:
            ttl_minutes = self.settings.access_token_ttl_minutes
        issued_at = int(time.time())
        return self._encode_jwt(
            {
                "sub": account_id,
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "iat": issued_at,
                "exp": issued_at + ttl_minutes * 60,
                "jti": uuid.uuid4().hex,
            }
        )

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("Missing bearer token")
        claims = self._decode_jwt(token)
        account_id = claims.get("sub") if claims else None
        if not isinstance(account_id, str) or not account_id:
            raise AuthenticationError("Invalid or expired token")
        return AuthContext(account_id=account_id, token_id=claims.get("jti"))

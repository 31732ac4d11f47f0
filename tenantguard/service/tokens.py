from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.storage.models import Tenant, User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
SECOND_FACTOR = "2fa"
TOKEN_TYPES = (ACCESS, REFRESH, SECOND_FACTOR)


def hash_token(token: str) -> str:
    """SHA-256 hex digest stored in place of a bearer token."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    tenant_id: str
    tenant_slug: str
    email: str
    token_type: str
    jti: str
    iat: int
    nbf: int
    exp: int
    sid: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.sub

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


class TokenService:
    """Compact HS256 JWS codec for access, refresh and pending second-factor tokens.

    Refresh tokens are signed with their own key, so an access or 2fa token
    never verifies as a refresh token and vice versa.
    """

    ALGORITHM = "HS256"

    def __init__(self, settings: Settings, *, nbf_leeway_seconds: int = 30) -> None:
        self.settings = settings
        self._access_key = settings.jwt_secret.encode()
        if settings.jwt_refresh_secret:
            self._refresh_key = settings.jwt_refresh_secret.encode()
        else:
            self._refresh_key = hmac.new(
                self._access_key, b"tenantguard-refresh", hashlib.sha256
            ).hexdigest().encode()
        self._nbf_leeway = nbf_leeway_seconds

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _key_for(self, token_type: str) -> bytes:
        return self._refresh_key if token_type == REFRESH else self._access_key

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        return self._encode_segment(
            hmac.new(self._key_for(token_type), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, payload['token_type'])}"

    def issue(
        self,
        token_type: str,
        tenant: Tenant,
        user: User,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
    ) -> tuple[str, TokenClaims]:
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type {token_type!r}")
        now = self._now()
        iat = int(now.timestamp())
        claims = TokenClaims(
            sub=user.id,
            tenant_id=tenant.id,
            tenant_slug=tenant.slug,
            email=user.email,
            token_type=token_type,
            jti=str(uuid.uuid4()),
            iat=iat,
            nbf=iat,
            exp=int((now + ttl).timestamp()),
            sid=session_id,
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": claims.sub,
            "tenant_id": claims.tenant_id,
            "tenant_slug": claims.tenant_slug,
            "email": claims.email,
            "token_type": claims.token_type,
            "jti": claims.jti,
            "iat": claims.iat,
            "nbf": claims.nbf,
            "exp": claims.exp,
        }
        if session_id:
            payload["sid"] = session_id
        return self._encode(payload), claims

    def issue_access_token(
        self, tenant: Tenant, user: User, session_id: str
    ) -> tuple[str, TokenClaims]:
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self.issue(ACCESS, tenant, user, ttl, session_id=session_id)

    def issue_refresh_token(
        self, tenant: Tenant, user: User, session_id: str, *, remember_me: bool = False
    ) -> tuple[str, TokenClaims]:
        return self.issue(
            REFRESH, tenant, user, self.refresh_ttl(remember_me), session_id=session_id
        )

    def issue_second_factor_token(self, tenant: Tenant, user: User) -> tuple[str, TokenClaims]:
        ttl = timedelta(minutes=self.settings.second_factor_token_ttl_minutes)
        return self.issue(SECOND_FACTOR, tenant, user, ttl)

    def refresh_ttl(self, remember_me: bool = False) -> timedelta:
        if remember_me:
            return timedelta(days=self.settings.remember_me_ttl_days)
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def peek_type(self, token: str) -> Optional[str]:
        """Unverified ``token_type`` claim; for routing only, never for trust."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception:
            return None
        token_type = payload.get("token_type") if isinstance(payload, dict) else None
        return token_type if token_type in TOKEN_TYPES else None

    def decode(self, token: str, expected_type: str) -> Optional[TokenClaims]:
        """Verify signature, type, issuer, audience and time claims.

        Returns ``None`` on any failure; the reason is logged, never raised.
        """
        if not token or expected_type not in TOKEN_TYPES:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != self.ALGORITHM:
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", expected_type)
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != expected_type:
            logger.warning(
                "jwt_type_mismatch", expected=expected_type, actual=payload.get("token_type")
            )
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
        try:
            exp = int(payload["exp"])
            nbf = int(payload.get("nbf", payload["iat"]))
            iat = int(payload["iat"])
            claims = TokenClaims(
                sub=str(payload["sub"]),
                tenant_id=str(payload["tenant_id"]),
                tenant_slug=str(payload.get("tenant_slug") or ""),
                email=str(payload.get("email") or ""),
                token_type=expected_type,
                jti=str(payload["jti"]),
                iat=iat,
                nbf=nbf,
                exp=exp,
                sid=payload.get("sid"),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("jwt_claims_invalid")
            return None
        now_ts = self._now().timestamp()
        if exp <= now_ts:
            return None
        if nbf > now_ts + self._nbf_leeway:
            return None
        if claims.token_type != SECOND_FACTOR and not claims.sid:
            return None
        return claims

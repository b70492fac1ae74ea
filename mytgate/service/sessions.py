from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from mytgate.logging import get_logger
from mytgate.service.errors import AuthError, AuthErrorKind
from mytgate.service.metrics import Metrics
from mytgate.storage.common import KeyValueStore

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = (ACCESS, REFRESH)


@dataclass(frozen=True)
class Claims:
    subject: str
    session_id: str
    token_id: str
    token_type: str
    issued_at: int
    expires_at: int

    def to_public(self) -> dict[str, Any]:
        return {
            "sub": self.subject,
            "sid": self.session_id,
            "token_type": self.token_type,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class SessionRecord:
    subject: str
    session_id: str
    access_token_id: str
    refresh_token_id: str
    issued_at: int
    access_expires_at: int
    refresh_expires_at: int


class SessionAuthority:
    """Issues and verifies the gateway's own HS256 access/refresh tokens.

    Verification depends only on the signing key, the token, the revocation
    set and the clock. The session record is read only when refreshing or
    revoking.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        signing_key: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 900,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_ttl_seconds > refresh_ttl_seconds:
            raise ValueError("access token lifetime must not exceed refresh lifetime")
        self.store = store
        self._signing_key = signing_key.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.metrics = metrics
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    # -- token encoding -------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._signing_key, signing_input.encode(), hashlib.sha256).digest()
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

    def _decode_jwt(self, token: str) -> Claims:
        """Check structure, signature, issuer and audience. Expiry is not checked."""
        if not isinstance(token, str):
            raise AuthError(AuthErrorKind.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise AuthError(AuthErrorKind.MALFORMED) from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise AuthError(AuthErrorKind.MALFORMED) from None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise AuthError(AuthErrorKind.MALFORMED)

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise AuthError(AuthErrorKind.MALFORMED)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise AuthError(AuthErrorKind.MALFORMED) from None
        if not isinstance(payload, dict):
            raise AuthError(AuthErrorKind.MALFORMED)
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise AuthError(AuthErrorKind.MALFORMED)

        try:
            return Claims(
                subject=str(payload["sub"]),
                session_id=str(payload["sid"]),
                token_id=str(payload["jti"]),
                token_type=str(payload["token_type"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            raise AuthError(AuthErrorKind.MALFORMED) from None

    def _claims_payload(
        self, subject: str, session_id: str, token_id: str, token_type: str, iat: int, exp: int
    ) -> dict[str, Any]:
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "sid": session_id,
            "jti": token_id,
            "token_type": token_type,
            "iat": iat,
            "exp": exp,
        }

    # -- storage ----------------------------------------------------------

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _revoked_key(token_id: str) -> str:
        return f"revoked:{token_id}"

    async def _save_session(self, record: SessionRecord) -> None:
        ttl = max(record.refresh_expires_at - self._now(), 1)
        await self.store.set(
            self._session_key(record.session_id), json.dumps(asdict(record)), ttl=ttl
        )

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.store.get(self._session_key(session_id))
        if raw is None:
            return None
        try:
            return SessionRecord(**json.loads(raw))
        except (ValueError, TypeError):
            logger.warning("session_record_corrupt", session_id=session_id)
            return None

    @staticmethod
    def _revoked_session_key(session_id: str) -> str:
        return f"revoked_session:{session_id}"

    async def _mark(self, key: str, expires_at: int) -> None:
        remaining = expires_at - self._now()
        if remaining <= 0:
            return
        await self.store.set(key, "1", ttl=remaining)

    async def _mark_revoked(self, token_id: str, expires_at: int) -> None:
        await self._mark(self._revoked_key(token_id), expires_at)

    async def is_revoked(self, token_id: str) -> bool:
        return await self.store.exists(self._revoked_key(token_id))

    async def is_session_revoked(self, session_id: str) -> bool:
        return await self.store.exists(self._revoked_session_key(session_id))

    # -- public operations ---------------------------------------------

    async def issue(self, subject: str) -> TokenPair:
        now = self._now()
        session_id = str(uuid.uuid4())
        access_jti = str(uuid.uuid4())
        refresh_jti = str(uuid.uuid4())
        refresh_exp = now + self.refresh_ttl_seconds
        access_exp = min(now + self.access_ttl_seconds, refresh_exp)

        access_token = self._encode_jwt(
            self._claims_payload(subject, session_id, access_jti, ACCESS, now, access_exp)
        )
        refresh_token = self._encode_jwt(
            self._claims_payload(subject, session_id, refresh_jti, REFRESH, now, refresh_exp)
        )
        await self._save_session(
            SessionRecord(
                subject=subject,
                session_id=session_id,
                access_token_id=access_jti,
                refresh_token_id=refresh_jti,
                issued_at=now,
                access_expires_at=access_exp,
                refresh_expires_at=refresh_exp,
            )
        )
        if self.metrics is not None:
            self.metrics.increment("sessions_issued")
        logger.info("session_issued", identity_hash=subject, session_id=session_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_exp - now,
        )

    async def verify(self, token: str, expected_type: str) -> Claims:
        """Return the token's claims or raise ``AuthError``.

        Checks run in a fixed order: structure and signature, token type,
        expiry, revocation of the token and then of its whole session. A
        token of the wrong type therefore always fails as ``WRONG_TYPE``
        whether or not it has expired.
        """
        if expected_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type: {expected_type}")
        claims = self._decode_jwt(token)
        if claims.token_type != expected_type:
            raise AuthError(AuthErrorKind.WRONG_TYPE)
        if claims.expires_at <= self._now():
            raise AuthError(AuthErrorKind.EXPIRED)
        if await self.is_revoked(claims.token_id):
            raise AuthError(AuthErrorKind.REVOKED)
        if await self.is_session_revoked(claims.session_id):
            raise AuthError(AuthErrorKind.REVOKED)
        return claims

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Issue a new access token for the refresh token's session.

        The refresh token is returned unchanged; it is not rotated.
        """
        claims = await self.verify(refresh_token, REFRESH)
        record = await self.get_session(claims.session_id)
        if record is None or record.refresh_token_id != claims.token_id:
            raise AuthError(AuthErrorKind.REVOKED)

        now = self._now()
        access_jti = str(uuid.uuid4())
        access_exp = min(now + self.access_ttl_seconds, claims.expires_at)
        access_token = self._encode_jwt(
            self._claims_payload(
                claims.subject, claims.session_id, access_jti, ACCESS, now, access_exp
            )
        )
        record.access_token_id = access_jti
        record.access_expires_at = access_exp
        await self._save_session(record)
        if await self.is_session_revoked(claims.session_id):
            # logout landed while this refresh was in flight; drop the
            # record it just wrote back
            await self.store.delete(self._session_key(claims.session_id))
            raise AuthError(AuthErrorKind.REVOKED)
        logger.info(
            "session_refreshed", identity_hash=claims.subject, session_id=claims.session_id
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_exp - now,
        )

    async def revoke(self, token: str) -> None:
        """Revoke a token ahead of its natural expiry.

        Revoking a refresh token also revokes the session's current access
        token. Malformed tokens are ignored.
        """
        try:
            claims = self._decode_jwt(token)
        except AuthError:
            logger.info("revoke_ignored_malformed")
            return
        if claims.token_type == REFRESH:
            await self.revoke_session(claims)
        else:
            await self._mark_revoked(claims.token_id, claims.expires_at)

    async def revoke_session(self, claims: Claims) -> None:
        """Revoke every token of the session ``claims`` belongs to.

        Besides the individual token ids, a session-wide marker rejects any
        access token minted for the session earlier, or by a refresh that
        races with this call. The marker lives as long as the session's
        refresh token could.
        """
        await self._mark_revoked(claims.token_id, claims.expires_at)
        record = await self.get_session(claims.session_id)
        if record is not None:
            session_expires_at = record.refresh_expires_at
        elif claims.token_type == REFRESH:
            session_expires_at = claims.expires_at
        else:
            session_expires_at = claims.issued_at + self.refresh_ttl_seconds
        await self._mark(self._revoked_session_key(claims.session_id), session_expires_at)
        if record is not None:
            await self._mark_revoked(record.access_token_id, record.access_expires_at)
            await self._mark_revoked(record.refresh_token_id, record.refresh_expires_at)
            await self.store.delete(self._session_key(claims.session_id))
        if self.metrics is not None:
            self.metrics.increment("sessions_revoked")
        logger.info(
            "session_revoked", identity_hash=claims.subject, session_id=claims.session_id
        )

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Protocol, Union

from taskkeeper.config import Settings
from taskkeeper.logging import get_logger
from taskkeeper.service.errors import (
    InvalidToken,
    NotFoundError,
    ServerError,
    Unauthorized,
    UnknownSession,
)
from taskkeeper.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class TokenStore(Protocol):
    def add_user_token(self, user_id: str, token: str) -> bool: ...

    def remove_user_token(self, user_id: str, token: str) -> bool: ...

    def clear_user_tokens(self, user_id: str, *, keep: Optional[str] = None) -> int: ...

    def has_user_token(self, user_id: str, token: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    # the exact token presented, so logout can revoke only this session
    token: str
    jti: Optional[str] = None


class SessionTokenManager:
    """Issues, resolves and revokes bearer tokens.

    A token is an HS256 JWT naming its user, but a valid signature is not
    enough: the token must also still be in that user's token set. Removing
    it from the set is what logs a session out.
    """

    def __init__(
        self,
        store: TokenStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    async def issue(self, user_id: str) -> str:
        now = int(time.time())
        jti = uuid.uuid4().hex
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "jti": jti,
            "iat": now,
        }
        if self.settings.token_ttl_minutes:
            payload["exp"] = now + self.settings.token_ttl_minutes * 60
        token = self._encode_jwt(payload)
        if not self.store.add_user_token(user_id, token):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self._cache_if_active(jti, user_id, token, payload.get("exp"))
        self.logger.info("session_token_issued", user_id=user_id, jti=jti)
        return token

    async def resolve(self, token: str) -> AuthContext:
        payload = self._decode_jwt(token)
        if not payload:
            raise InvalidToken("invalid token")
        user_id = payload.get("sub")
        jti = payload.get("jti")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidToken("invalid token")

        if self.cache and jti:
            try:
                if await self.cache.get_session_user(jti) == user_id:
                    return AuthContext(user_id=user_id, token=token, jti=jti)
            except Exception as exc:
                # Cache outages fall through to the store
                self.logger.warning("session_cache_read_failed", error=str(exc))

        active = self.store.has_user_token(user_id, token)
        if active and jti:
            active = await self._cache_if_active(jti, user_id, token, payload.get("exp"))
        if not active:
            self.logger.info("session_token_unknown", user_id=user_id, jti=jti)
            raise UnknownSession("session is no longer active")
        return AuthContext(user_id=user_id, token=token, jti=jti)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise Unauthorized("please authenticate")
        return await self.resolve(token)

    async def revoke(self, user_id: str, token: str) -> bool:
        """Remove exactly ``token``; revoking an already revoked token is a no-op.

        The cache entry is dropped both before and after the store removal. If
        Redis cannot be reached the store is left alone and ``ServerError`` is
        raised, so the session stays consistently alive rather than cached
        after it was revoked.
        """
        payload = self._decode_jwt(token)
        jti = payload.get("jti") if payload else None
        await self._evict(jti, user_id)
        removed = self.store.remove_user_token(user_id, token)
        # a concurrent resolve may have cached the token in between
        await self._evict(jti, user_id)
        self.logger.info("session_token_revoked", user_id=user_id, removed=removed)
        return removed

    async def revoke_all(
        self, user_id: str, *, except_token: Optional[str] = None
    ) -> int:
        """Revoke every token of a user, optionally keeping the caller's own.

        Cache eviction follows the same before-and-after order as ``revoke``.

        Returns:
            Number of tokens removed from the store
        """
        except_jti = None
        if except_token:
            payload = self._decode_jwt(except_token)
            except_jti = payload.get("jti") if payload else None
        await self._evict_user(user_id, except_jti)
        removed = self.store.clear_user_tokens(user_id, keep=except_token)
        await self._evict_user(user_id, except_jti)
        self.logger.info("session_tokens_revoked_all", user_id=user_id, removed=removed)
        return removed

    async def _evict(self, jti: Optional[str], user_id: str) -> None:
        if not self.cache or not jti:
            return
        try:
            await self.cache.revoke_session(jti, user_id)
        except Exception as exc:
            self.logger.error(
                "session_cache_revoke_failed", user_id=user_id, error=str(exc)
            )
            raise ServerError("session cache unavailable") from exc

    async def _evict_user(self, user_id: str, except_jti: Optional[str]) -> None:
        if not self.cache:
            return
        try:
            await self.cache.revoke_user_sessions(user_id, except_jti)
        except Exception as exc:
            self.logger.error(
                "session_cache_revoke_all_failed", user_id=user_id, error=str(exc)
            )
            raise ServerError("session cache unavailable") from exc

    async def _cache_if_active(
        self, jti: str, user_id: str, token: str, exp: Any
    ) -> bool:
        """Cache ``jti`` and confirm the token survived the write.

        A revoke that lands while the write is in flight would otherwise leave
        the revoked token in the cache until the entry expires.
        """
        if not self.cache:
            return True
        ttl = self.settings.session_cache_ttl_seconds
        if exp:
            ttl = min(ttl, int(float(exp) - time.time()))
        if ttl <= 0:
            return True
        try:
            await self.cache.cache_session(jti, user_id, ttl)
        except Exception as exc:
            self.logger.warning("session_cache_write_failed", error=str(exc))
        if self.store.has_user_token(user_id, token):
            return True
        await self._evict(jti, user_id)
        return False

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

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

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        exp = payload.get("exp")
        if exp is not None:
            try:
                exp_ts = float(exp)
            except (TypeError, ValueError):
                return None
            if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
                return None
        return payload

import re
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from backend import RedisBackend, parse_json_value
from constants import TOKEN_BYTES, TOKEN_GRACE_PERIOD_SECONDS, TOKEN_TTL_SECONDS
from errors import AuthError
from logging_config import get_logger
from redis_keys import (
    REDIS_LAST_TOKEN_KEY,
    REDIS_LAST_TOKEN_PATTERN,
    REDIS_LEGACY_TOKEN_KEY,
    REDIS_TOKEN_KEY,
    REDIS_TOKEN_OWNER_PATTERN,
    REDIS_TOKEN_PATTERN,
    REDIS_USER_TOKEN_KEY,
    REDIS_USER_TOKEN_PATTERN,
)

logger = get_logger(__name__)

# tokens end up inside SCAN patterns, so glob characters must never get through
TOKEN_REGEX = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


@dataclass
class TokenValidation:
    valid: bool
    expired: bool = False


@dataclass
class TokenOwner:
    username: str
    expired: bool = False
    expired_at: Optional[int] = None


def is_well_formed_token(token: Optional[str]) -> bool:
    return bool(token) and bool(TOKEN_REGEX.match(token))


def _owner_from_value(raw: Optional[str]) -> Optional[str]:
    """Forward mappings are plain usernames; very old ones were {"username": ...} objects."""
    if not raw:
        return None
    if raw.startswith("{"):
        value = parse_json_value(raw)
        if isinstance(value, dict) and isinstance(value.get("username"), str):
            return value["username"].lower()
        return None
    return raw.lower()


class TokenValidator:
    """One way of recognising a (username, token) pair.

    try_validate returns None when this strategy has nothing to say, so the
    manager can fall through to the next one.
    """

    def __init__(self, backend: RedisBackend, clock: Callable[[], float] = time.time):
        self.backend = backend
        self.clock = clock

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def try_validate(self, username: str, token: str) -> Optional[TokenValidation]:
        raise NotImplementedError


class PerUserTokenValidator(TokenValidator):
    def try_validate(self, username, token):
        user_token_key = REDIS_USER_TOKEN_KEY.format(username=username, token=token)
        if not self.backend.exists(user_token_key):
            return None
        self.backend.expire(user_token_key, TOKEN_TTL_SECONDS)
        self.backend.expire(REDIS_TOKEN_KEY.format(token=token), TOKEN_TTL_SECONDS)
        return TokenValidation(valid=True)


class ForwardTokenValidator(TokenValidator):
    def try_validate(self, username, token):
        token_key = REDIS_TOKEN_KEY.format(token=token)
        if _owner_from_value(self.backend.get(token_key)) != username:
            return None
        self.backend.expire(token_key, TOKEN_TTL_SECONDS)
        # backfill the per-user index
        self.backend.set(
            REDIS_USER_TOKEN_KEY.format(username=username, token=token), self.now_ms(), ttl=TOKEN_TTL_SECONDS
        )
        return TokenValidation(valid=True)


class LegacyTokenValidator(TokenValidator):
    def try_validate(self, username, token):
        legacy_key = REDIS_LEGACY_TOKEN_KEY.format(username=username)
        stored = self.backend.get(legacy_key)
        if not stored or stored != token:
            return None
        self.backend.expire(legacy_key, TOKEN_TTL_SECONDS)
        self.backend.set(
            REDIS_USER_TOKEN_KEY.format(username=username, token=token), self.now_ms(), ttl=TOKEN_TTL_SECONDS
        )
        return TokenValidation(valid=True)


class GraceTokenValidator(TokenValidator):
    def try_validate(self, username, token):
        record = self.backend.get_json(REDIS_LAST_TOKEN_KEY.format(username=username))
        if not isinstance(record, dict):
            return None
        try:
            grace_end = int(record["expiredAt"]) + TOKEN_GRACE_PERIOD_SECONDS * 1000
        except (KeyError, TypeError, ValueError):
            logger.error(f"Malformed last token record for user {username}")
            return None
        if record.get("token") == token and self.now_ms() < grace_end:
            logger.info(f"Auth validation: found expired token for user {username} within grace period")
            return TokenValidation(valid=True, expired=True)
        return None


class TokenManager:
    """Issues, validates, rotates and revokes bearer tokens.

    A user may hold any number of tokens at once (one per device). Each token
    lives under two keys: token:<t> -> username for O(1) lookup and
    token:user:<u>:<t> -> issued-at for enumerating a user's sessions. One
    recently retired token per user is kept in token:last:<u> so that a client
    racing its own refresh does not lock itself out.
    """

    def __init__(
        self,
        backend: RedisBackend,
        clock: Callable[[], float] = time.time,
        validators: Optional[Sequence[TokenValidator]] = None,
        grace_validators: Optional[Sequence[TokenValidator]] = None,
    ):
        self.backend = backend
        self.clock = clock
        if validators is None:
            validators = [
                PerUserTokenValidator(backend, clock),
                ForwardTokenValidator(backend, clock),
                LegacyTokenValidator(backend, clock),
            ]
        if grace_validators is None:
            grace_validators = [GraceTokenValidator(backend, clock)]
        self.validators = list(validators)
        self.grace_validators = list(grace_validators)

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    @staticmethod
    def generate() -> str:
        return secrets.token_hex(TOKEN_BYTES)

    def store(self, username: str, token: str):
        username = username.lower()
        self.backend.set(REDIS_USER_TOKEN_KEY.format(username=username, token=token), self.now_ms(), ttl=TOKEN_TTL_SECONDS)
        self.backend.set(REDIS_TOKEN_KEY.format(token=token), username, ttl=TOKEN_TTL_SECONDS)

    def issue(self, username: str) -> str:
        """Mint a fresh token; it stays refreshable for the grace period after its TTL runs out."""
        token = self.generate()
        self.store(username, token)
        self.store_last_valid(
            username,
            token,
            expired_at_ms=self.now_ms() + TOKEN_TTL_SECONDS * 1000,
            ttl=TOKEN_TTL_SECONDS + TOKEN_GRACE_PERIOD_SECONDS,
        )
        logger.info(f"Issued token for user {username}")
        return token

    def store_last_valid(self, username: str, token: str, expired_at_ms: Optional[int] = None,
                         ttl: int = TOKEN_GRACE_PERIOD_SECONDS):
        if expired_at_ms is None:
            expired_at_ms = self.now_ms()
        self.backend.set(
            REDIS_LAST_TOKEN_KEY.format(username=username.lower()),
            {"token": token, "expiredAt": expired_at_ms},
            ttl=ttl,
        )

    def validate(self, username: Optional[str], token: Optional[str], allow_expired: bool = False) -> TokenValidation:
        if not username or not is_well_formed_token(token):
            logger.info("Auth validation failed: missing username or token")
            return TokenValidation(valid=False)
        username = username.lower()
        strategies = self.validators + (self.grace_validators if allow_expired else [])
        for strategy in strategies:
            result = strategy.try_validate(username, token)
            if result is not None:
                return result
        logger.info(f"Auth validation failed for user {username}")
        return TokenValidation(valid=False)

    def delete(self, token: str):
        """Remove both mappings of a single token."""
        if not is_well_formed_token(token):
            return
        token_key = REDIS_TOKEN_KEY.format(token=token)
        owner = _owner_from_value(self.backend.get(token_key))
        self.backend.delete(token_key)
        if owner:
            self.backend.delete(REDIS_USER_TOKEN_KEY.format(username=owner, token=token))
            return
        self.backend.delete_many(self.backend.scan_keys(REDIS_TOKEN_OWNER_PATTERN.format(token=token)))

    def retire(self, username: str, token: str):
        """Delete a token but keep it as the user's grace record."""
        self.store_last_valid(username, token)
        self.delete(token)

    def revoke(self, username: str, token: str):
        """Log a single session out for good, including its legacy and grace traces."""
        username = username.lower()
        self.delete(token)
        legacy_key = REDIS_LEGACY_TOKEN_KEY.format(username=username)
        if self.backend.get(legacy_key) == token:
            self.backend.delete(legacy_key)
        last_key = REDIS_LAST_TOKEN_KEY.format(username=username)
        record = self.backend.get_json(last_key)
        if isinstance(record, dict) and record.get("token") == token:
            self.backend.delete(last_key)
        logger.info(f"Revoked one token for user {username}")

    def refresh(self, username: str, old_token: str) -> str:
        username = username.lower()
        if not self.validate(username, old_token, allow_expired=True).valid:
            raise AuthError("Invalid authentication token")
        self.retire(username, old_token)
        token = self.generate()
        self.store(username, token)
        logger.info(f"Rotated token for user {username}")
        return token

    def list_tokens(self, username: str) -> List[Dict]:
        tokens = []
        for key in self.backend.scan_keys(REDIS_USER_TOKEN_PATTERN.format(username=username.lower())):
            token = key.rsplit(":", 1)[-1]
            created_at = self.backend.get_json(key)
            tokens.append({"token": token, "createdAt": created_at})
        return tokens

    def delete_all(self, username: str) -> int:
        username = username.lower()
        deleted = 0

        user_token_keys = self.backend.scan_keys(REDIS_USER_TOKEN_PATTERN.format(username=username))
        if user_token_keys:
            keys = []
            for key in user_token_keys:
                keys.append(key)
                keys.append(REDIS_TOKEN_KEY.format(token=key.rsplit(":", 1)[-1]))
            self.backend.delete_many(keys)
            deleted += len(user_token_keys)

        # forward mappings whose per-user twin already expired
        legacy_key = REDIS_LEGACY_TOKEN_KEY.format(username=username)
        last_key = REDIS_LAST_TOKEN_KEY.format(username=username)
        orphaned = []
        for key in self.backend.scan_keys(REDIS_TOKEN_PATTERN):
            if key.startswith("token:user:") or key.startswith("token:last:") or key == legacy_key:
                continue
            if _owner_from_value(self.backend.get(key)) == username:
                orphaned.append(key)
        if orphaned:
            deleted += self.backend.delete(*orphaned)

        deleted += self.backend.delete(legacy_key)
        deleted += self.backend.delete(last_key)
        logger.info(f"Deleted {deleted} token keys for user {username}")
        return deleted

    def find_owner(self, token: str) -> Optional[TokenOwner]:
        """Resolve a bare token to its user, trying cheap lookups before scans."""
        if not is_well_formed_token(token):
            return None
        token_key = REDIS_TOKEN_KEY.format(token=token)
        owner = _owner_from_value(self.backend.get(token_key))
        if owner:
            self.backend.expire(token_key, TOKEN_TTL_SECONDS)
            user_token_key = REDIS_USER_TOKEN_KEY.format(username=owner, token=token)
            if not self.backend.expire(user_token_key, TOKEN_TTL_SECONDS):
                self.backend.set(user_token_key, self.now_ms(), ttl=TOKEN_TTL_SECONDS)
            return TokenOwner(username=owner)

        found = self.backend.scan_keys(REDIS_TOKEN_OWNER_PATTERN.format(token=token), limit=1)
        if found:
            owner = found[0].split(":")[2]
            self.backend.expire(found[0], TOKEN_TTL_SECONDS)
            self.backend.set(token_key, owner, ttl=TOKEN_TTL_SECONDS)
            return TokenOwner(username=owner)

        now = self.now_ms()
        for key in self.backend.scan_keys(REDIS_LAST_TOKEN_PATTERN):
            record = self.backend.get_json(key)
            if not isinstance(record, dict) or record.get("token") != token:
                continue
            try:
                expired_at = int(record.get("expiredAt") or 0)
            except (TypeError, ValueError):
                logger.error(f"Malformed last token record at {key}")
                continue
            if now < expired_at + TOKEN_GRACE_PERIOD_SECONDS * 1000:
                return TokenOwner(username=key.rsplit(":", 1)[-1], expired=True, expired_at=expired_at)
        return None

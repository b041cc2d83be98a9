import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import bcrypt

from backend import RedisBackend
from constants import (
    MAX_USERNAME_LENGTH,
    MIN_USERNAME_LENGTH,
    PASSWORD_BCRYPT_ROUNDS,
    PASSWORD_MIN_LENGTH,
    USER_SEARCH_MAX_RESULTS,
    USER_SEARCH_MIN_LENGTH,
    USER_TTL_SECONDS,
)
from errors import AuthError, ChatError, InvalidUsername, ProfaneUsername, UsernameTaken, ValidationError
from logging_config import get_logger
from moderation import ProfanityFilter
from redis_keys import REDIS_PASSWORD_KEY, REDIS_USER_KEY, REDIS_USER_PATTERN, REDIS_USER_SEARCH_PATTERN
from schemas.chat import ChatUser
from tokens import TokenManager

logger = get_logger(__name__)

# letter first, 3-30 chars, a '-' or '_' only ever sits between two alphanumerics
USERNAME_REGEX = re.compile(r"^[a-z](?:[a-z0-9]|[-_](?=[a-z0-9])){2,29}$", re.IGNORECASE)
SEARCH_QUERY_STRIP = re.compile(r"[^a-z0-9_-]")


def is_valid_username(username: Optional[str]) -> bool:
    return bool(username) and bool(USERNAME_REGEX.match(username))


def assert_valid_username(username: Optional[str]) -> str:
    """Return the canonical (lowercase) form or raise InvalidUsername."""
    if not is_valid_username(username):
        logger.info(f"Invalid username format: {username}")
        raise InvalidUsername()
    return username.lower()


def make_admin_policy(admin_usernames: Iterable[str]) -> Callable[[Optional[str]], bool]:
    admins = frozenset(name.lower() for name in admin_usernames)

    def is_admin(username: Optional[str]) -> bool:
        return bool(username) and username.lower() in admins

    return is_admin


def hash_password(password: str, rounds: int = PASSWORD_BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


@dataclass
class UserSession:
    user: ChatUser
    token: str
    created: bool


class IdentityManager:
    def __init__(
        self,
        backend: RedisBackend,
        tokens: TokenManager,
        profanity_filter: ProfanityFilter,
        bcrypt_rounds: int = PASSWORD_BCRYPT_ROUNDS,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.tokens = tokens
        self.profanity_filter = profanity_filter
        self.bcrypt_rounds = bcrypt_rounds
        self.clock = clock

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def validate_username(self, username: Optional[str]) -> str:
        if not username:
            raise ValidationError("Username is required")
        if self.profanity_filter.is_profane(username):
            logger.info(f"Username contains inappropriate language: {username}")
            raise ProfaneUsername()
        if len(username) < MIN_USERNAME_LENGTH:
            raise InvalidUsername(f"Username must be at least {MIN_USERNAME_LENGTH} characters")
        if len(username) > MAX_USERNAME_LENGTH:
            raise InvalidUsername(f"Username must be {MAX_USERNAME_LENGTH} characters or less")
        return assert_valid_username(username)

    # User records

    def get_user(self, username: str) -> Optional[ChatUser]:
        data = self.backend.get_json(REDIS_USER_KEY.format(username=username.lower()))
        if not isinstance(data, dict):
            return None
        return ChatUser.model_validate(data)

    def user_exists(self, username: str) -> bool:
        return self.backend.exists(REDIS_USER_KEY.format(username=username.lower()))

    def touch_user(self, username: str) -> ChatUser:
        user = ChatUser(username=username.lower(), last_active=self.now_ms())
        self.backend.set(REDIS_USER_KEY.format(username=user.username), user.to_dict(), ttl=USER_TTL_SECONDS)
        return user

    def create_user(self, username: str, password: Optional[str] = None) -> UserSession:
        """Register a username, or log in when it exists and the password matches."""
        username = self.validate_username(username)
        if password and len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")

        user = ChatUser(username=username, last_active=self.now_ms())
        created = self.backend.set_if_absent(REDIS_USER_KEY.format(username=username), user.to_dict())
        if not created:
            if password:
                password_hash = self.get_password_hash(username)
                if password_hash and verify_password(password, password_hash):
                    logger.info(f"createUser for existing user {username} matched password, logging in")
                    existing = self.get_user(username) or user
                    return UserSession(user=existing, token=self.tokens.issue(username), created=False)
            logger.info(f"Username {username} already taken")
            raise UsernameTaken()

        if password:
            self.set_password(username, password)
        logger.info(f"User {username} created")
        return UserSession(user=user, token=self.tokens.issue(username), created=True)

    def ensure_user_exists(self, username: str) -> ChatUser:
        username = self.validate_username(username)
        existing = self.get_user(username)
        if existing:
            return existing

        logger.info(f"User {username} not found, attempting creation")
        user = ChatUser(username=username, last_active=self.now_ms())
        if self.backend.set_if_absent(REDIS_USER_KEY.format(username=username), user.to_dict()):
            logger.info(f"User {username} created lazily")
            return user

        logger.info(f"User {username} created concurrently, fetching existing data")
        existing = self.get_user(username)
        if existing:
            return existing
        logger.error(f"User {username} existed momentarily but is now gone")
        raise ChatError("Failed to send message due to temporary issue, please try again.", 500)

    def list_usernames(self) -> List[str]:
        prefix_length = len(REDIS_USER_KEY.format(username=""))
        return [key[prefix_length:] for key in self.backend.scan_keys(REDIS_USER_PATTERN)]

    def search_users(self, query: str) -> List[dict]:
        query = SEARCH_QUERY_STRIP.sub("", (query or "").lower())
        if len(query) < USER_SEARCH_MIN_LENGTH:
            return []
        keys = self.backend.scan_keys(REDIS_USER_SEARCH_PATTERN.format(query=query), limit=USER_SEARCH_MAX_RESULTS)
        users = []
        for data in self.backend.mget_json(keys):
            if isinstance(data, dict) and data.get("username"):
                users.append(ChatUser.model_validate(data).to_dict())
        return users[:USER_SEARCH_MAX_RESULTS]

    # Passwords

    def get_password_hash(self, username: str) -> Optional[str]:
        return self.backend.get(REDIS_PASSWORD_KEY.format(username=username.lower()))

    def has_password(self, username: str) -> bool:
        return bool(self.get_password_hash(username))

    def set_password(self, username: str, password: Optional[str]):
        if not password:
            raise ValidationError("Password is required")
        if len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
        self.backend.set(REDIS_PASSWORD_KEY.format(username=username.lower()), hash_password(password, self.bcrypt_rounds))
        logger.info(f"Password set for user {username}")

    def authenticate_with_password(self, username: str, password: str, old_token: Optional[str] = None) -> str:
        username = username.lower()
        if not self.user_exists(username):
            raise AuthError("Invalid username or password")
        password_hash = self.get_password_hash(username)
        if not password_hash or not verify_password(password, password_hash):
            logger.info(f"Password authentication failed for user {username}")
            raise AuthError("Invalid username or password")
        if old_token:
            owner = self.tokens.find_owner(old_token)
            if owner is None or owner.username != username:
                logger.info(f"Ignoring oldToken for {username}: it belongs to another user or is unknown")
                old_token = None
        if not old_token:
            return self.tokens.issue(username)
        # the previous token keeps the grace slot, so the new one must not overwrite it
        self.tokens.retire(username, old_token)
        token = self.tokens.generate()
        self.tokens.store(username, token)
        return token

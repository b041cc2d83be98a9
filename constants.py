import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = os.getenv("REDIS_PORT", 6379)
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

if REDIS_PASSWORD:
    REDIS_URL = os.getenv("REDIS_URL", f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}")
else:
    REDIS_URL = os.getenv("REDIS_URL", f"redis://{REDIS_HOST}:{REDIS_PORT}")

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# Authorization
ADMIN_USERNAMES = [
    name.strip().lower()
    for name in os.getenv("CHAT_ADMIN_USERNAMES", "ryo").split(",")
    if name.strip()
]

# AI persona replies
AI_PERSONA_USERNAME = os.getenv("AI_PERSONA_USERNAME", "ryo").lower()
AI_MODEL = os.getenv("AI_MODEL", "gpt-4.1-mini")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", 15))
AI_TEMPERATURE = 0.6

# Users and tokens
MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 30
USER_TTL_SECONDS = 90 * 86400
TOKEN_BYTES = 32
TOKEN_TTL_SECONDS = 90 * 86400
TOKEN_GRACE_PERIOD_SECONDS = 365 * 86400

PASSWORD_MIN_LENGTH = 8
PASSWORD_BCRYPT_ROUNDS = int(os.getenv("PASSWORD_BCRYPT_ROUNDS", 10))

# Rooms and messages
ROOM_PRESENCE_TTL_SECONDS = 86400
MAX_MESSAGE_LENGTH = 1000
MESSAGE_HISTORY_LIMIT = 100
MESSAGE_FETCH_LIMIT = 20
USER_SEARCH_MIN_LENGTH = 2
USER_SEARCH_MAX_RESULTS = 20
SCAN_BATCH_SIZE = 100

# Rate limiting
RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_ATTEMPTS = 10

CHAT_BURST_SHORT_WINDOW_SECONDS = 10
CHAT_BURST_SHORT_LIMIT = 3
CHAT_BURST_LONG_WINDOW_SECONDS = 60
CHAT_BURST_LONG_LIMIT = 20
CHAT_MIN_INTERVAL_SECONDS = 2

# Moderation
PROFANITY_EXTRA_WORDS = [
    word.strip()
    for word in os.getenv("PROFANITY_EXTRA_WORDS", "badword1,badword2,inappropriate").split(",")
    if word.strip()
]
PROFANITY_PLACEHOLDER = os.getenv("PROFANITY_PLACEHOLDER", "█")

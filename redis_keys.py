REDIS_USER_KEY = "user:{username}" # user record json
REDIS_PASSWORD_KEY = "password:{username}" # bcrypt hash
REDIS_TOKEN_KEY = "token:{token}" # token -> username
REDIS_USER_TOKEN_KEY = "token:user:{username}:{token}" # per-user token -> issued at (ms)
REDIS_LAST_TOKEN_KEY = "token:last:{username}" # grace record json {token, expiredAt}
REDIS_LEGACY_TOKEN_KEY = "token:{username}" # pre multi-token scheme, read only

REDIS_ROOM_KEY = "room:{room_id}" # room record json
REDIS_ROOM_USERS_KEY = "room_users:{room_id}" # legacy set of usernames, pruned on read
REDIS_PRESENCE_KEY = "presence:{room_id}:{username}" # exists while the user is active
REDIS_MESSAGES_KEY = "messages:{room_id}" # list, newest first

REDIS_RATE_LIMIT_KEY = "rl:{action}:{identifier}"
REDIS_BURST_SHORT_KEY = "rl:chat:b:s:{room_id}:{username}"
REDIS_BURST_LONG_KEY = "rl:chat:b:l:{room_id}:{username}"
REDIS_BURST_LAST_KEY = "rl:chat:b:last:{room_id}:{username}"

# Scan patterns
REDIS_USER_PATTERN = "user:*"
REDIS_USER_SEARCH_PATTERN = "user:*{query}*"
REDIS_TOKEN_PATTERN = "token:*"
REDIS_USER_TOKEN_PATTERN = "token:user:{username}:*"
REDIS_TOKEN_OWNER_PATTERN = "token:user:*:{token}"
REDIS_LAST_TOKEN_PATTERN = "token:last:*"
REDIS_ROOM_PATTERN = "room:*"
REDIS_ROOM_USERS_PATTERN = "room_users:*"
REDIS_PRESENCE_PATTERN = "presence:*"
REDIS_ROOM_PRESENCE_PATTERN = "presence:{room_id}:*"
REDIS_MESSAGES_PATTERN = "messages:*"

# Pub/sub channels
PUBLIC_CHANNEL = "chats-public"
ROOM_CHANNEL = "room-{room_id}"
USER_CHANNEL = "chats-{username}"

# **Value shapes**
# - `user:{username}` = {"username": ..., "lastActive": ms}
# - `room:{id}` = {"id", "name", "type": public|private, "createdAt", "userCount", "members"?}
# - `messages:{id}` items = {"id", "roomId", "username", "content", "timestamp"}
# - `token:last:{username}` = {"token": ..., "expiredAt": ms}

class ChatError(Exception):
    """Business-rule failure that maps directly onto an HTTP error response."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None, status_code: int = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ChatError):
    status_code = 400
    default_message = "Invalid request"


class InvalidUsername(ValidationError):
    default_message = (
        "Invalid username: use 3-30 letters/numbers; '-' or '_' allowed between characters; "
        "no spaces or symbols"
    )


class ProfaneUsername(ValidationError):
    default_message = "Username contains inappropriate language"


class InvalidRoomId(ValidationError):
    default_message = "Invalid room ID format"


class InvalidRoomType(ValidationError):
    default_message = "Invalid room type. Must be 'public' or 'private'"


class MissingRoomName(ValidationError):
    default_message = "Room name is required for public rooms"


class NoMembersSpecified(ValidationError):
    default_message = "At least one member is required for private rooms"


class AuthError(ChatError):
    status_code = 401
    default_message = "Unauthorized"


class ForbiddenError(ChatError):
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(ChatError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ChatError):
    status_code = 409
    default_message = "Conflict"


class UsernameTaken(ConflictError):
    default_message = "Username already taken"


class DuplicateMessage(ConflictError):
    status_code = 400
    default_message = "Duplicate message detected"


class RateLimitError(ChatError):
    status_code = 429
    default_message = "Too many requests, please slow down"


TooManyRequests = RateLimitError

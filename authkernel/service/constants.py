from __future__ import annotations

# Routes reachable without credentials, matched after stripping the /api prefix.
PUBLIC_ROUTES = frozenset(
    {
        "/auth/register",
        "/auth/login",
        "/auth/refresh",
        "/auth/verify-email",
        "/auth/resend-verification",
        "/auth/forgot-password",
        "/auth/reset-password",
        "/auth/stats",
        "/auth/check-email",
        "/health",
        "/docs",
        "/openapi.json",
    }
)

API_PREFIX = "/api"

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"
SESSION_ACTIVE_COOKIE = "session_active"
REFRESH_COOKIE_PATH = "/api/auth"

DEFAULT_ACCESS_EXPIRES_IN = 900
REGISTRATION_USER_AGENT = "Registration"
VERIFICATION_USER_AGENT = "Email verification"

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIAL_CHARS = '!@#$%^&*(),.?":{}|<>'

FIRST_NAME_MAX_LENGTH = 50
LAST_NAME_MAX_LENGTH = 50
DISPLAY_NAME_MAX_LENGTH = 100

# user-facing messages
MSG_EMAIL_EXISTS = "user with this email already exists"
MSG_INVALID_CREDENTIALS = "invalid email or password"
MSG_EMAIL_NOT_VERIFIED = "email not verified"
MSG_AUTH_REQUIRED = "authentication required"
MSG_INVALID_TOKEN = "invalid token"
MSG_TOKEN_EXPIRED = "token expired"
MSG_INVALID_REFRESH = "invalid or expired refresh token"
MSG_INVALID_ONE_SHOT = "invalid or expired token"
MSG_USER_NOT_FOUND = "user not found"
MSG_SESSION_NOT_FOUND = "session not found"
MSG_ALREADY_VERIFIED = "email is already verified"
MSG_WRONG_CURRENT_PASSWORD = "current password is incorrect"
MSG_PASSWORDS_MISMATCH = "passwords do not match"
MSG_WEAK_PASSWORD = "password does not meet requirements"
MSG_VERIFICATION_SEND_FAILED = "failed to send verification email"
MSG_EMAIL_NOT_CONFIGURED = "email service is not configured"

# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Error taxonomy for the identity, session and credit core.

Every failure a service can surface is a ``CoreError`` subclass. Each class
carries its kind (input, auth, conflict, economic, authorization, transient,
fatal), the HTTP status the API layer maps it to, and a public message. The
public message is what clients see; anything more specific belongs in the
server log.
"""


class CoreError(Exception):
    """Base class for errors raised by the service layer."""

    kind = "input"
    status_code = 400
    code = "error"
    message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.detail = message or self.message


# Input
class InvalidInput(CoreError):
    code = "invalid_input"
    message = "Invalid input"


class NotFound(CoreError):
    status_code = 404
    code = "not_found"
    message = "Not found"


# Auth
class InvalidCredentials(CoreError):
    kind = "auth"
    status_code = 401
    code = "invalid_credentials"
    message = "Invalid credentials"


class Unauthenticated(CoreError):
    kind = "auth"
    status_code = 401
    code = "unauthenticated"
    message = "Authentication required"


class CsrfInvalid(CoreError):
    kind = "auth"
    status_code = 403
    code = "csrf_invalid"
    message = "Invalid CSRF token"


class RateLimited(CoreError):
    kind = "auth"
    status_code = 429
    code = "rate_limited"
    message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None):
        super().__init__(message)
        self.retry_after = retry_after


# Conflict
class EmailTaken(CoreError):
    kind = "conflict"
    code = "email_taken"
    message = "Email already registered"


class InviteInvalid(CoreError):
    kind = "conflict"
    code = "invite_invalid"
    message = "Invalid invite code"

    def __init__(self, reason: str | None = None):
        super().__init__(reason)
        self.reason = reason


class InviteRaceLost(CoreError):
    kind = "conflict"
    code = "invite_race_lost"
    message = "Invite code is no longer valid"


class InvalidTransition(CoreError):
    kind = "conflict"
    status_code = 409
    code = "invalid_transition"
    message = "Invalid state transition"


class HoldNotActive(CoreError):
    kind = "conflict"
    status_code = 409
    code = "hold_not_active"
    message = "Hold is not active"


class HoldAlreadyConverted(HoldNotActive):
    code = "already_converted"
    message = "Hold was already converted"


class ConstraintViolation(CoreError):
    kind = "conflict"
    status_code = 409
    code = "constraint_violation"
    message = "Conflicting write"

    def __init__(self, constraint: str, key: str | None = None):
        super().__init__(f"{self.message} ({constraint})")
        self.constraint = constraint
        self.key = key


# Economic
class InsufficientFunds(CoreError):
    kind = "economic"
    status_code = 402
    code = "insufficient_funds"

    def __init__(self, available: int, required: int | None = None):
        message = f"Insufficient credits. Available: {available}"
        if required is not None:
            message += f", required: {required}"
        super().__init__(message)
        self.available = available
        self.required = required


class AmountExceedsHold(CoreError):
    kind = "economic"
    status_code = 422
    code = "amount_exceeds_hold"
    message = "Amount exceeds the reserved hold"


# Authorization
class Unauthorized(CoreError):
    kind = "authorization"
    status_code = 403
    code = "unauthorized"
    message = "Not permitted"


# Transient
class StoreUnavailable(CoreError):
    kind = "transient"
    status_code = 503
    code = "store_unavailable"
    message = "Storage temporarily unavailable"


class StoreTimeout(CoreError):
    kind = "transient"
    status_code = 504
    code = "store_timeout"
    message = "Storage operation timed out"


# Fatal
class InvariantViolation(CoreError):
    kind = "fatal"
    status_code = 500
    code = "invariant_violation"
    message = "Internal consistency error"

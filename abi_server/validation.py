# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Email and password input validation."""

import re

from email_validator import EmailNotValidError, validate_email as _check_email

from abi_server.errors import InvalidInput

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 72  # bcrypt ignores anything past 72 bytes
# Rejected when any entry appears anywhere in the password, ignoring case
COMMON_PASSWORDS = (
    "password",
    "password123",
    "12345678",
    "123456789",
    "qwerty123",
    "letmein",
    "welcome",
    "admin123",
    "iloveyou",
    "sunshine",
)
_COMPLEXITY = re.compile(r"[0-9!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


def normalize_email(email: str) -> str:
    """Trim and lower-case. The canonical form used for storage and lookups."""
    return email.strip().lower()


def validate_email(email: str | None) -> str:
    """Check syntax (no DNS lookups) and return the canonical email. Raises InvalidInput."""
    if not email or not email.strip():
        raise InvalidInput("Email is required")
    try:
        _check_email(email.strip(), check_deliverability=False)
    except EmailNotValidError:
        raise InvalidInput("Invalid email format") from None
    return normalize_email(email)


def password_problems(password: str | None) -> list[str]:
    """All reasons ``password`` is unacceptable; empty when it is fine."""
    if not password:
        return ["Password is required"]
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password.encode()) > MAX_PASSWORD_LENGTH:
        problems.append(f"Password must be at most {MAX_PASSWORD_LENGTH} bytes")
    lowered = password.lower()
    if any(common in lowered for common in COMMON_PASSWORDS):
        problems.append("Password is too common, please choose a more secure password")
    if not _COMPLEXITY.search(password):
        problems.append("Password must contain at least one number or special character")
    return problems


def validate_password(password: str | None) -> str:
    """Raise InvalidInput with the first problem, else return the password unchanged."""
    problems = password_problems(password)
    if problems:
        raise InvalidInput(problems[0])
    return password

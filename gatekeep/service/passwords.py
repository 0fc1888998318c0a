from __future__ import annotations

import re
from typing import Any, Dict, List

MIN_LENGTH = 12
MAX_LENGTH = 128
# passwords at least this long may contain a common word
COMMON_SUBSTRING_EXEMPT_LENGTH = 16

COMMON_WEAK_PASSWORDS = frozenset({
    "password", "password123", "12345678", "123456789", "1234567890",
    "qwerty", "abc123", "monkey", "1234567", "letmein", "trustno1",
    "dragon", "baseball", "iloveyou", "master", "sunshine", "ashley",
    "bailey", "passw0rd", "shadow", "123123", "654321", "superman",
    "qazwsx", "michael", "football", "welcome", "jesus", "ninja",
    "mustang", "password1", "root", "admin", "administrator", "1234",
    "12345", "123456", "admin123", "root123",
})

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


def validate(password: str) -> List[str]:
    """Return every policy violation; an empty list means acceptable."""
    errors: List[str] = []
    if not password:
        return ["Password is required"]
    if len(password) < MIN_LENGTH:
        errors.append(f"Password must be at least {MIN_LENGTH} characters long")
    if len(password) > MAX_LENGTH:
        errors.append(f"Password must not exceed {MAX_LENGTH} characters")
    if not _LOWER.search(password):
        errors.append("Password must contain at least one lowercase letter")
    if not _UPPER.search(password):
        errors.append("Password must contain at least one uppercase letter")
    if not _DIGIT.search(password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL.search(password):
        errors.append("Password must contain at least one special character")

    lowered = password.lower().strip()
    if lowered in COMMON_WEAK_PASSWORDS:
        errors.append("Password is too common or weak. Please choose a stronger password")
    if len(password) < COMMON_SUBSTRING_EXEMPT_LENGTH and any(
        weak in lowered for weak in COMMON_WEAK_PASSWORDS
    ):
        errors.append("Password contains common patterns. Please choose a more unique password")
    return errors


def is_valid(password: str) -> bool:
    return not validate(password)


def strength(password: str) -> Dict[str, Any]:
    if validate(password):
        length = len(password or "")
        score = 2 if length >= 12 else 1 if length >= 8 else 0
        return {"score": score, "label": "Does not meet requirements", "meets_requirements": False}

    score = 0
    for threshold in (12, 16, 20):
        if len(password) >= threshold:
            score += 1
    for pattern in (_LOWER, _UPPER, _DIGIT, _SPECIAL):
        if pattern.search(password):
            score += 1
    if len(password) >= 24:
        score += 1

    if score >= 7:
        label = "Strong"
    elif score >= 5:
        label = "Good"
    elif score >= 3:
        label = "Fair"
    elif score >= 1:
        label = "Weak"
    else:
        label = "Very Weak"
    return {"score": score, "label": label, "meets_requirements": True}

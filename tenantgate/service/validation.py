from __future__ import annotations

import re
import unicodedata
from typing import List, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from tenantgate.service.auth_errors import AuthErrorCode, AuthFlowError
from tenantgate.storage.models import Credentials

EMAIL_MAX_LENGTH = 254
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PASSWORD_CLASSES = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")


def normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if not normalized:
        raise ValueError("Email address is required")
    if len(normalized) > EMAIL_MAX_LENGTH:
        raise ValueError("Email address is too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Please enter a valid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please enter a valid email address")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("Please enter a valid email address")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please enter a valid email address")
    return normalized


def check_password_shape(value: str) -> str:
    if not value:
        raise ValueError("Password is required")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError("Password is too long")
    if not _PASSWORD_CLASSES.match(value):
        raise ValueError(
            "Password must contain at least one lowercase letter, one uppercase letter, and one number"
        )
    return value


def password_strength(password: str) -> Tuple[int, List[str]]:
    """Score a password from 0 to 6 and list what would improve it."""
    feedback: List[str] = []
    score = 0
    checks = [
        (len(password) >= 8, "Use at least 8 characters"),
        (bool(re.search(r"[a-z]", password)), "Include lowercase letters"),
        (bool(re.search(r"[A-Z]", password)), "Include uppercase letters"),
        (bool(re.search(r"\d", password)), "Include numbers"),
        (bool(re.search(r"[^a-zA-Z\d]", password)), "Include special characters"),
    ]
    for passed, hint in checks:
        if passed:
            score += 1
        else:
            feedback.append(hint)
    if len(password) >= 12:
        score += 1
    return score, feedback


class LoginForm(BaseModel):
    """Shape of a credential submission, checked before any upstream call."""

    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., max_length=EMAIL_MAX_LENGTH + 64)
    password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return check_password_shape(value)

    def to_credentials(self) -> Credentials:
        return Credentials(email=self.email, password=self.password, remember_me=self.remember_me)


def validate_credentials(email: str, password: str, remember_me: bool = False) -> Credentials:
    """Validate raw form input, raising a ``ValidationError`` auth error on bad shape."""
    try:
        form = LoginForm(email=email, password=password, remember_me=remember_me)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else None
        raise AuthFlowError(
            AuthErrorCode.VALIDATION_ERROR,
            first.get("msg", "invalid input"),
            field=field,
        ) from exc
    return form.to_credentials()

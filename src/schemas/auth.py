"""Signup and login form schemas and the form-state result."""

import re
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PASSWORD_ALLOWED = re.compile(r"^[a-zA-Z\d@$!%*?&]+$")
PASSWORD_MIN_LENGTH = 8


class FieldError(BaseModel):
    field: str
    message: str


class FormState(BaseModel):
    """Result handed back to the form when signup or login did not redirect."""
    message: Optional[str] = None
    errors: List[FieldError] = Field(default_factory=list)
    success: bool = False
    user_id: Optional[str] = None

    @classmethod
    def failure(cls, message: str, field: str = "general") -> "FormState":
        return cls(message=message, errors=[FieldError(field=field, message=message)])


class ChannelParams(BaseModel):
    """Channel parameters carried through signup/login untouched."""
    channel: Optional[str] = None
    link: Optional[str] = None

    @property
    def present(self) -> bool:
        return bool(self.channel and self.link)


class SignupForm(ChannelParams):
    email: str
    password: str
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    locale: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Please enter a valid email address")
        return value

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        if len(value) < PASSWORD_MIN_LENGTH:
            raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
        if not PASSWORD_ALLOWED.match(value):
            raise ValueError("Password contains unsupported characters")
        if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
            raise ValueError("Password must contain an uppercase letter, a lowercase letter and a number")
        return value


class LoginForm(ChannelParams):
    email: str
    password: str = Field(..., min_length=1)
    locale: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Please enter a valid email address")
        return value

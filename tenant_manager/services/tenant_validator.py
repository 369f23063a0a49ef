"""
Tenant Validator

Checks tenant signup input against format, policy and uniqueness rules.
Every rule is evaluated and errors accumulate; nothing short-circuits.
Uniqueness failures are kept apart from rule failures so callers can tell a
ConflictError from a ValidationError.
"""

import logging
import random
import re
from dataclasses import dataclass, field, fields

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager import constants
from tenant_manager.exceptions import ConflictError, ValidationError
from tenant_manager.models.tenant import Tenant
from tenant_manager.services.user_directory import UserDirectory
from tenant_manager.utils.naming import build_database_name, build_subdomain, strip_subdomain_suffix
from tenant_manager.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
UNSAFE_MARKUP_PATTERN = re.compile(r"<script|<iframe|javascript:", re.IGNORECASE)

REQUIRED_FIELDS = ("full_name", "email", "username", "password")


@dataclass
class TenantInput:
    username: str
    email: str
    password: str
    full_name: str
    company_name: str | None = None
    phone_number: str | None = None
    address: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "TenantInput":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name in REQUIRED_FIELDS:
            values.setdefault(name, "")
        return cls(**values)


@dataclass
class ValidationResult:
    rule_errors: list[str] = field(default_factory=list)
    conflicts: list[tuple[str, str, str]] = field(default_factory=list)  # (field, value, message)

    @property
    def errors(self) -> list[str]:
        return self.rule_errors + [message for _, _, message in self.conflicts]

    @property
    def valid(self) -> bool:
        return not self.rule_errors and not self.conflicts

    def add_conflict(self, field_name: str, value: str, message: str) -> None:
        self.conflicts.append((field_name, value, message))

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": self.errors}

    def raise_for_errors(self) -> None:
        if self.rule_errors:
            raise ValidationError(errors=self.errors)
        if self.conflicts:
            field_name, value, _ = self.conflicts[0]
            raise ConflictError("Tenant", field_name, value, errors=self.errors)


# ── pure rules ─────────────────────────────────────────────────────────────────


def check_username(username: str) -> list[str]:
    errors = []
    if not constants.USERNAME_MIN_LENGTH <= len(username) <= constants.USERNAME_MAX_LENGTH:
        errors.append(
            f"Username must be between {constants.USERNAME_MIN_LENGTH} "
            f"and {constants.USERNAME_MAX_LENGTH} characters"
        )
    if not USERNAME_PATTERN.match(username):
        errors.append("Username must start with a letter and contain only letters, numbers, hyphens and underscores")
    if username.lower() in constants.RESERVED_USERNAMES:
        errors.append(f"Username '{username}' is reserved")
    return errors


def check_email(email: str) -> list[str]:
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return ["Invalid email address"]
    domain = email.rsplit("@", 1)[-1].lower()
    if domain in constants.DISPOSABLE_EMAIL_DOMAINS:
        return ["Disposable email addresses are not allowed"]
    return []


def password_strength(password: str) -> int:
    classes = (r"[a-z]", r"[A-Z]", r"[0-9]", r"[^a-zA-Z0-9]")
    return sum(1 for pattern in classes if re.search(pattern, password))


def check_password(password: str) -> list[str]:
    errors = []
    if not constants.PASSWORD_MIN_LENGTH <= len(password) <= constants.PASSWORD_MAX_LENGTH:
        errors.append(
            f"Password must be between {constants.PASSWORD_MIN_LENGTH} "
            f"and {constants.PASSWORD_MAX_LENGTH} characters"
        )
    if password_strength(password) < constants.PASSWORD_MIN_CLASSES:
        errors.append(
            "Password must contain at least three of: lowercase letters, uppercase letters, numbers, special characters"
        )
    if password.lower() in constants.COMMON_PASSWORDS:
        errors.append("Password is too common")
    return errors


def check_phone(phone: str) -> list[str]:
    digits = re.sub(r"\D", "", phone)
    if not constants.PHONE_MIN_DIGITS <= len(digits) <= constants.PHONE_MAX_DIGITS:
        return [f"Phone number must contain {constants.PHONE_MIN_DIGITS} to {constants.PHONE_MAX_DIGITS} digits"]
    return []


def check_subdomain(subdomain: str) -> list[str]:
    label = strip_subdomain_suffix(subdomain)
    errors = []
    if not constants.SUBDOMAIN_MIN_LENGTH <= len(label) <= constants.SUBDOMAIN_MAX_LENGTH:
        errors.append(
            f"Subdomain must be between {constants.SUBDOMAIN_MIN_LENGTH} "
            f"and {constants.SUBDOMAIN_MAX_LENGTH} characters"
        )
    if not SUBDOMAIN_PATTERN.match(label):
        errors.append("Subdomain may contain only lowercase letters, numbers and inner hyphens")
    return errors


def check_company_name(company_name: str) -> list[str]:
    errors = []
    if len(company_name) > constants.COMPANY_NAME_MAX_LENGTH:
        errors.append(f"Company name must be at most {constants.COMPANY_NAME_MAX_LENGTH} characters")
    if UNSAFE_MARKUP_PATTERN.search(company_name):
        errors.append("Company name contains invalid content")
    return errors


# ── lookups ────────────────────────────────────────────────────────────────────


async def _tenant_value_taken(db: AsyncSession, column, value: str) -> bool:
    result = await db.execute(select(func.count()).select_from(Tenant).where(func.lower(column) == value.lower()))
    return (result.scalar() or 0) > 0


async def validate_tenant_input(
    data: TenantInput,
    db: AsyncSession,
    existing_user_id: int | None = None,
) -> ValidationResult:
    """
    Validate signup input.

    `existing_user_id` marks the identity the tenant will be attached to; its
    own username and email do not count as taken.
    """
    result = ValidationResult()
    users = UserDirectory(db)

    for name in REQUIRED_FIELDS:
        if not (getattr(data, name) or "").strip():
            result.rule_errors.append(f"Field '{name}' is required")

    if data.username:
        result.rule_errors.extend(check_username(data.username))
    if data.email:
        result.rule_errors.extend(check_email(data.email))
    if data.password:
        result.rule_errors.extend(check_password(data.password))
    if data.phone_number:
        result.rule_errors.extend(check_phone(data.phone_number))
    if data.company_name:
        result.rule_errors.extend(check_company_name(data.company_name))

    if data.username:
        subdomain = build_subdomain(data.username)
        result.rule_errors.extend(check_subdomain(subdomain))

        if await users.username_exists(data.username, exclude_user_id=existing_user_id):
            result.add_conflict("username", data.username, "Username is already registered")
        if await _tenant_value_taken(db, Tenant.tenant_username, data.username):
            result.add_conflict("username", data.username, "A tenant with this username already exists")
        if await _tenant_value_taken(db, Tenant.subdomain, subdomain):
            result.add_conflict("subdomain", subdomain, "Subdomain is already taken")
        database_name = build_database_name(data.username)
        if await _tenant_value_taken(db, Tenant.database_name, database_name):
            result.add_conflict("database_name", database_name, "Database name is already taken")

    if data.email and await users.email_exists(data.email, exclude_user_id=existing_user_id):
        result.add_conflict("email", data.email, "Email is already registered")

    if not result.valid:
        logger.info("Tenant input rejected for username=%s: %s", data.username, result.errors)
    return result


async def check_username_availability(username: str, db: AsyncSession) -> dict:
    """Single-field check used by signup forms while the user types."""
    errors = check_username(username)
    if errors:
        return {"available": False, "message": errors[0], "subdomain_preview": None}

    subdomain = build_subdomain(username)
    taken = (
        await UserDirectory(db).username_exists(username)
        or await _tenant_value_taken(db, Tenant.tenant_username, username)
        or await _tenant_value_taken(db, Tenant.subdomain, subdomain)
    )
    if taken:
        return {"available": False, "message": "Username is already taken", "subdomain_preview": None}
    return {"available": True, "message": "Username is available", "subdomain_preview": subdomain}


async def suggest_usernames(base: str, db: AsyncSession, limit: int = 5) -> list[str]:
    candidates = [f"{base}{i}" for i in range(1, 6)]
    candidates.append(f"{base}{utcnow().year}")
    candidates.append(f"{base}_{random.randint(1000, 9999)}")  # nosec B311 - not security sensitive

    suggestions = []
    for candidate in candidates:
        if len(suggestions) >= limit:
            break
        availability = await check_username_availability(candidate, db)
        if availability["available"]:
            suggestions.append(candidate)
    return suggestions

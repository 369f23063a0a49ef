import re

from tenant_manager.config import settings
from tenant_manager.utils.slugify import slugify

MAX_DATABASE_NAME_LENGTH = 63


def sanitize_database_name(name: str) -> str:
    """Identifier-safe, lower-case, letter-prefixed and length-capped."""
    name = re.sub(r"[^a-zA-Z0-9_]", "", name).lower()
    if not name or not name[0].isalpha():
        name = f"db_{name}"
    return name[:MAX_DATABASE_NAME_LENGTH]


def subdomain_label(username: str) -> str:
    return slugify(username)


def build_subdomain(username: str, suffix: str | None = None) -> str:
    suffix = settings.subdomain_suffix if suffix is None else suffix
    return f"{subdomain_label(username)}{suffix}"


def strip_subdomain_suffix(subdomain: str, suffix: str | None = None) -> str:
    suffix = settings.subdomain_suffix if suffix is None else suffix
    if suffix and subdomain.endswith(suffix):
        return subdomain[: -len(suffix)]
    return subdomain


def build_database_name(username: str, prefix: str | None = None) -> str:
    prefix = settings.tenant_db_prefix if prefix is None else prefix
    return sanitize_database_name(prefix + subdomain_label(username).replace("-", "_"))

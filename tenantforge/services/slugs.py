from __future__ import annotations

from dataclasses import dataclass
import re

from tenantforge.core.config import get_settings


_SEPARATOR_CHARS = re.compile(r"[\s_]+")
_DISALLOWED_CHARS = re.compile(r"[^a-z0-9-]")
_REPEATED_SEPARATORS = re.compile(r"-{2,}")
_SLUG_SHAPE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_LOGIN_SHAPE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s.]+$")
_LOGIN_MAX_LENGTH = 254


@dataclass(frozen=True)
class SlugPolicy:
    min_length: int
    max_length: int
    reserved_words: frozenset[str]


@dataclass(frozen=True)
class SlugCheck:
    ok: bool
    reason: str | None = None


def slug_policy_from_settings() -> SlugPolicy:
    settings = get_settings()
    reserved = frozenset(
        word.strip().lower() for word in settings.slug_reserved_words.split(",") if word.strip()
    )
    return SlugPolicy(
        min_length=max(1, settings.slug_min_length),
        max_length=max(settings.slug_min_length, settings.slug_max_length),
        reserved_words=reserved,
    )


def sanitize_slug(raw: str, policy: SlugPolicy | None = None) -> str:
    """Normalize a human-chosen identifier into slug form.

    Whitespace and underscores become hyphens, anything outside ``[a-z0-9-]``
    is dropped, hyphen runs collapse and the result is trimmed to the policy's
    maximum length. ``"Golden Spoon!!"`` becomes ``"golden-spoon"``.
    """
    policy = policy or slug_policy_from_settings()
    candidate = (raw or "").strip().lower()
    candidate = _SEPARATOR_CHARS.sub("-", candidate)
    candidate = _DISALLOWED_CHARS.sub("", candidate)
    candidate = _REPEATED_SEPARATORS.sub("-", candidate).strip("-")
    # Truncation can expose a trailing hyphen again.
    return candidate[: policy.max_length].rstrip("-")


def validate_slug(candidate: str, policy: SlugPolicy | None = None) -> SlugCheck:
    policy = policy or slug_policy_from_settings()
    if not candidate:
        return SlugCheck(False, "Slug is empty after sanitization")
    if len(candidate) < policy.min_length:
        return SlugCheck(False, f"Slug must be at least {policy.min_length} characters")
    if len(candidate) > policy.max_length:
        return SlugCheck(False, f"Slug must not exceed {policy.max_length} characters")
    if not _SLUG_SHAPE.match(candidate):
        return SlugCheck(False, "Slug must be lowercase alphanumeric with single hyphens")
    if candidate in policy.reserved_words:
        return SlugCheck(False, f'"{candidate}" is a reserved keyword and cannot be used')
    return SlugCheck(True)


def normalize_login(raw: str) -> str:
    return (raw or "").strip().lower()


def validate_login(login: str) -> SlugCheck:
    # Shape only; deliverability is the identity provider's concern.
    if not login:
        return SlugCheck(False, "Owner login is required")
    if len(login) > _LOGIN_MAX_LENGTH:
        return SlugCheck(False, f"Owner login must not exceed {_LOGIN_MAX_LENGTH} characters")
    if not _LOGIN_SHAPE.match(login):
        return SlugCheck(False, "Owner login must be a well-formed email address")
    return SlugCheck(True)

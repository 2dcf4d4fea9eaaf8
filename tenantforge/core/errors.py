from __future__ import annotations


class TenantForgeError(Exception):
    """Base error for tenantforge."""


class ProviderConfigError(TenantForgeError):
    """Missing or invalid provider configuration."""


class InvalidTransitionError(TenantForgeError):
    """Provisioning state machine rejected a transition."""


class IdentityProviderError(TenantForgeError):
    """Identity provider rejected a request permanently."""


class IdentityAlreadyExistsError(IdentityProviderError):
    """Login already registered with the identity provider."""


class IdentityProviderUnavailableError(IdentityProviderError):
    """Transient identity provider failure; safe to retry."""


class IdentityCreationFailed(TenantForgeError):
    """Owner identity could not be created or discovered within the retry budget."""

    def __init__(self, login: str, attempts: int, last_error: Exception | None = None) -> None:
        self.login = login
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"identity creation failed for {login} after {attempts} attempt(s){detail}")


class RecordWriteError(TenantForgeError):
    """Atomic tenant record write failed; nothing was committed."""

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        # Underlying driver text, kept for audit only.
        self.detail = detail or message


class DuplicateSlugError(RecordWriteError):
    """Tenant slug already taken."""

    def __init__(self, slug: str, *, detail: str | None = None) -> None:
        self.slug = slug
        super().__init__(f"slug '{slug}' is already in use", detail=detail)


class InvalidReferenceError(RecordWriteError):
    """Configuration referenced a row that does not exist."""


class ConstraintViolationError(RecordWriteError):
    """Integrity constraint other than slug uniqueness or references failed."""


class UnknownRecordError(RecordWriteError):
    """Unclassified database failure during the atomic write."""

from __future__ import annotations

from enum import Enum

from tenantforge.core.errors import InvalidTransitionError


class ProvisioningStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    CREATING_IDENTITY = "creating_identity"
    WRITING_RECORDS = "writing_records"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ErrorCode(str, Enum):
    # Caller-visible codes; lower layers raise typed errors that the orchestrator maps here.
    INVALID_SLUG = "InvalidSlug"
    INVALID_LOGIN = "InvalidLogin"
    DUPLICATE_SLUG = "DuplicateSlug"
    IDENTITY_CREATION_FAILED = "IdentityCreationFailed"
    INVALID_REFERENCE = "InvalidReference"
    UNAUTHORIZED = "Unauthorized"
    UNKNOWN = "Unknown"
    IN_PROGRESS = "ProvisioningInProgress"


TERMINAL_STATUSES = frozenset(
    {ProvisioningStatus.COMPLETED, ProvisioningStatus.FAILED, ProvisioningStatus.ROLLED_BACK}
)

_TRANSITIONS: dict[ProvisioningStatus, frozenset[ProvisioningStatus]] = {
    ProvisioningStatus.PENDING: frozenset({ProvisioningStatus.VALIDATING, ProvisioningStatus.FAILED}),
    ProvisioningStatus.VALIDATING: frozenset(
        {ProvisioningStatus.CREATING_IDENTITY, ProvisioningStatus.FAILED}
    ),
    ProvisioningStatus.CREATING_IDENTITY: frozenset(
        {ProvisioningStatus.WRITING_RECORDS, ProvisioningStatus.FAILED}
    ),
    # Write failures must pass through rolled_back so compensation is always recorded.
    ProvisioningStatus.WRITING_RECORDS: frozenset(
        {ProvisioningStatus.COMPLETED, ProvisioningStatus.ROLLED_BACK}
    ),
    ProvisioningStatus.ROLLED_BACK: frozenset({ProvisioningStatus.FAILED}),
    ProvisioningStatus.COMPLETED: frozenset(),
    ProvisioningStatus.FAILED: frozenset(),
}


def is_terminal(status: str | ProvisioningStatus) -> bool:
    return ProvisioningStatus(status) in TERMINAL_STATUSES


def can_transition(current: str | ProvisioningStatus, target: str | ProvisioningStatus) -> bool:
    return ProvisioningStatus(target) in _TRANSITIONS[ProvisioningStatus(current)]


def ensure_transition(
    current: str | ProvisioningStatus, target: str | ProvisioningStatus
) -> ProvisioningStatus:
    # Guard every status write so a bug cannot skip compensation or revive a terminal request.
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"illegal provisioning transition {ProvisioningStatus(current).value} -> "
            f"{ProvisioningStatus(target).value}"
        )
    return ProvisioningStatus(target)

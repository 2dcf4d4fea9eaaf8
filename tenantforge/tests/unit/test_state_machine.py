from __future__ import annotations

import pytest

from tenantforge.core.errors import InvalidTransitionError
from tenantforge.domain.state import ProvisioningStatus, can_transition, ensure_transition, is_terminal


def test_happy_path_transitions_are_allowed() -> None:
    path = [
        ProvisioningStatus.PENDING,
        ProvisioningStatus.VALIDATING,
        ProvisioningStatus.CREATING_IDENTITY,
        ProvisioningStatus.WRITING_RECORDS,
        ProvisioningStatus.COMPLETED,
    ]
    for current, target in zip(path, path[1:]):
        assert ensure_transition(current, target) == target


def test_write_failure_must_pass_through_rolled_back() -> None:
    assert not can_transition(ProvisioningStatus.WRITING_RECORDS, ProvisioningStatus.FAILED)
    assert can_transition(ProvisioningStatus.WRITING_RECORDS, ProvisioningStatus.ROLLED_BACK)
    assert can_transition(ProvisioningStatus.ROLLED_BACK, ProvisioningStatus.FAILED)


def test_terminal_states_cannot_be_revived() -> None:
    with pytest.raises(InvalidTransitionError):
        ensure_transition("completed", "validating")
    with pytest.raises(InvalidTransitionError):
        ensure_transition(ProvisioningStatus.FAILED, ProvisioningStatus.PENDING)


def test_skipping_stages_is_rejected() -> None:
    with pytest.raises(InvalidTransitionError):
        ensure_transition(ProvisioningStatus.PENDING, ProvisioningStatus.WRITING_RECORDS)


def test_is_terminal_accepts_raw_strings() -> None:
    assert is_terminal("completed")
    assert is_terminal("rolled_back")
    assert not is_terminal("creating_identity")

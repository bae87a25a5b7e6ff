import pytest

from domain.common.exceptions import AuthorizationException
from domain.lending.authorization import (
    AuthorizationContext,
    authorization_error_message,
    can_access_transaction,
    can_perform_bulk_operations,
    can_process_refund,
    is_authorized_for_location,
    require_authorization,
)
from domain.lending.entity import UserRole


def test_admin_passes_every_location_check():
    ctx = AuthorizationContext(role=UserRole.ADMIN, user_id=1, target_location_id=42)
    assert is_authorized_for_location(ctx)
    assert can_process_refund(ctx)
    assert can_perform_bulk_operations(ctx)
    assert can_access_transaction(99, ctx)


def test_is_admin_flag_overrides_role():
    ctx = AuthorizationContext(role=UserRole.OPERATOR, user_id=1, user_location_id=1, target_location_id=2, is_admin=True)
    assert is_authorized_for_location(ctx)
    assert can_perform_bulk_operations(ctx)


def test_operator_limited_to_own_location():
    own = AuthorizationContext(role=UserRole.OPERATOR, user_id=2, user_location_id=5, target_location_id=5)
    other = AuthorizationContext(role=UserRole.OPERATOR, user_id=2, user_location_id=5, target_location_id=6)
    assert is_authorized_for_location(own)
    assert can_process_refund(own)
    assert not is_authorized_for_location(other)
    assert not can_process_refund(other)
    assert can_access_transaction(5, own)
    assert not can_access_transaction(6, own)


def test_operator_without_target_needs_assigned_location():
    assigned = AuthorizationContext(role=UserRole.OPERATOR, user_id=2, user_location_id=5)
    unassigned = AuthorizationContext(role=UserRole.OPERATOR, user_id=2, target_location_id=5)
    assert is_authorized_for_location(assigned)
    assert not is_authorized_for_location(unassigned)
    assert not can_access_transaction(5, unassigned)


def test_borrower_fails_administrative_checks():
    ctx = AuthorizationContext(role=UserRole.BORROWER, user_id=3, user_location_id=5, target_location_id=5)
    assert not is_authorized_for_location(ctx)
    assert not can_process_refund(ctx)
    assert not can_perform_bulk_operations(ctx)
    assert not can_access_transaction(5, ctx)


def test_bulk_operations_require_admin():
    ctx = AuthorizationContext(role=UserRole.OPERATOR, user_id=2, user_location_id=5)
    assert not can_perform_bulk_operations(ctx)


def test_error_messages_are_role_specific():
    assert authorization_error_message("bulk_operation", UserRole.OPERATOR) == (
        "operators are not authorized to perform bulk operations"
    )
    assert authorization_error_message("refund", UserRole.BORROWER) == "borrowers are not authorized to process refunds"
    assert "access this location" in authorization_error_message("location_access", "operator")


def test_require_authorization_raises_only_when_denied():
    require_authorization(True, "unused")
    with pytest.raises(AuthorizationException) as exc_info:
        require_authorization(False, "nope")
    assert exc_info.value.message == "nope"

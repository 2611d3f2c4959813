"""Tests for the role → transition authorization table."""

import itertools

import pytest

from pharmaledger.auth.permissions import (
    OPERATION_ROLES,
    TRANSITION_RULES,
    Role,
    allowed_transitions,
    check_transition,
    is_transition_allowed,
    require_role,
    resolve_role,
)
from pharmaledger.exceptions import AuthorizationError
from pharmaledger.schemas.batch import BatchStatus as S

ALLOWED = {
    ("Manufacturer", S.MANUFACTURED, S.IN_TRANSIT),
    ("Distributor", S.IN_TRANSIT, S.DELIVERED),
    ("Distributor", S.DELIVERED, S.IN_TRANSIT),
    ("Pharmacy", S.DELIVERED, S.SOLD),
}

ROLES = ["Manufacturer", "Distributor", "Pharmacy", "Regulator", "Wholesaler", ""]


@pytest.mark.unit
class TestTransitionTable:
    """Every role/status combination against the table."""

    @pytest.mark.parametrize(
        "role,current,requested",
        [
            (role, current, requested)
            for role, current, requested in itertools.product(ROLES, S, S)
        ],
    )
    def test_pair(self, role, current, requested):
        if (role, current, requested) in ALLOWED:
            assert check_transition(role, current, requested) == Role(role)
        else:
            with pytest.raises(AuthorizationError) as exc_info:
                check_transition(role, current, requested)
            assert exc_info.value.error_code == "PERMISSION_DENIED"
            assert exc_info.value.details["current_status"] == current.value
            assert exc_info.value.details["requested_status"] == requested.value

    def test_table_matches_documented_rules(self):
        flattened = {
            (role.value, current, requested)
            for role, pairs in TRANSITION_RULES.items()
            for current, requested in pairs
        }
        assert flattened == ALLOWED

    def test_no_transition_leaves_a_terminal_status(self):
        for pairs in TRANSITION_RULES.values():
            for current, _ in pairs:
                assert current not in {S.SOLD, S.FLAGGED, S.EXPIRED}

    def test_error_names_role_and_pair(self):
        with pytest.raises(AuthorizationError) as exc_info:
            check_transition("Pharmacy", S.IN_TRANSIT, S.SOLD)
        message = str(exc_info.value)
        assert "Pharmacy" in message
        assert "InTransit" in message and "Sold" in message

    def test_regulator_has_no_transitions(self):
        assert allowed_transitions("Regulator") == frozenset()

    def test_is_transition_allowed(self):
        assert is_transition_allowed("Distributor", S.DELIVERED, S.IN_TRANSIT)
        assert not is_transition_allowed("Distributor", S.DELIVERED, S.SOLD)
        assert not is_transition_allowed(None, S.MANUFACTURED, S.IN_TRANSIT)


@pytest.mark.unit
class TestRoleResolution:
    def test_exact_role_names(self):
        assert resolve_role("Manufacturer") is Role.MANUFACTURER
        assert resolve_role("Regulator") is Role.REGULATOR

    def test_membership_service_aliases(self):
        assert resolve_role("ManufacturerMSP") is Role.MANUFACTURER
        assert resolve_role("PharmacyMSP") is Role.PHARMACY
        assert check_transition("DistributorMSP", S.IN_TRANSIT, S.DELIVERED) is Role.DISTRIBUTOR

    @pytest.mark.parametrize("raw", ["manufacturer", "Admin", "", None, "RegulatorOrg"])
    def test_unknown_roles(self, raw):
        assert resolve_role(raw) is None


@pytest.mark.unit
class TestOperationRoles:
    @pytest.mark.parametrize("operation", sorted(OPERATION_ROLES))
    def test_only_listed_roles_pass(self, operation):
        for raw in ROLES:
            role = resolve_role(raw)
            if role in OPERATION_ROLES[operation]:
                assert require_role(raw, operation) is role
            else:
                with pytest.raises(AuthorizationError) as exc_info:
                    require_role(raw, operation)
                assert exc_info.value.details["operation"] == operation

    def test_create_is_manufacturer_only(self):
        assert OPERATION_ROLES["batch.create"] == {Role.MANUFACTURER}

    def test_regulator_operations(self):
        for operation in ("batch.flag", "reports.compliance", "reports.violations"):
            assert OPERATION_ROLES[operation] == {Role.REGULATOR}

    def test_unknown_operation_denied(self):
        with pytest.raises(AuthorizationError):
            require_role("Regulator", "ledger.purge")

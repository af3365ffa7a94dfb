"""
Tests for credentials, the employee directory and sessions
"""

from datetime import datetime, timezone, timedelta

import jwt
import pytest

from teller_core.audit import AuditEventType, AuditTrail
from teller_core.errors import (
    IdentityNotProvisioned, InvalidCredentials, PermissionDenied, SessionInvalid, ValidationError
)
from teller_core.identity import CredentialStore, EmployeeDirectory, SessionGate
from teller_core.permissions import Capability, Role
from teller_core.storage import InMemoryStorage

from support import make_context


SECRET = "identity-test-secret-0123456789abcdef"
FORGED_SECRET = "forged-secret-0123456789abcdef0123456"


class TestIdentityGate:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.credentials = CredentialStore(self.storage)
        self.directory = EmployeeDirectory(self.storage, self.credentials, self.audit_trail)
        self.sessions = SessionGate(self.storage, self.directory, self.audit_trail, secret=SECRET)

        self.employee = self.directory.provision_employee(
            "Rana@Example.com", "s3cret-pass", "Rana Haddad", Role.TELLER,
            permissions=["can_create_customer"], branch="Aleppo"
        )

    def test_login_returns_identity_and_token(self):
        result = self.sessions.login("rana@example.com", "s3cret-pass")

        assert result.identity.employee_id == self.employee.id
        assert result.identity.role == Role.TELLER
        assert result.identity.permissions == frozenset({Capability.CREATE_CUSTOMER})
        assert result.identity.branch == "Aleppo"

        claims = jwt.decode(result.token, SECRET, algorithms=["HS256"])
        assert claims["sub"] == self.employee.id
        assert claims["sid"] == result.session_id

    def test_email_is_case_insensitive(self):
        assert self.sessions.login("  RANA@example.COM ", "s3cret-pass").identity.email == "rana@example.com"

    def test_wrong_password_and_unknown_email_look_identical(self):
        with pytest.raises(InvalidCredentials) as wrong_password:
            self.sessions.login("rana@example.com", "nope")
        with pytest.raises(InvalidCredentials) as unknown_email:
            self.sessions.login("nobody@example.com", "s3cret-pass")

        assert str(wrong_password.value) == str(unknown_email.value) == "Invalid email or password"
        assert wrong_password.value.to_dict() == unknown_email.value.to_dict()

    def test_inactive_employee_gets_the_uniform_error(self):
        data = self.storage.load("employees", self.employee.id)
        data["is_active"] = False
        self.storage.save("employees", self.employee.id, data)

        with pytest.raises(InvalidCredentials):
            self.sessions.login("rana@example.com", "s3cret-pass")

    def test_credentials_without_employee_record(self):
        self.credentials.register("ghost@example.com", "whatever1")

        with pytest.raises(IdentityNotProvisioned):
            self.sessions.login("ghost@example.com", "whatever1")

    def test_failed_logins_are_audited(self):
        with pytest.raises(InvalidCredentials):
            self.sessions.login("rana@example.com", "bad")
        events = self.audit_trail.get_events_by_type(AuditEventType.LOGIN_FAILED)
        assert len(events) == 1
        assert events[0].metadata["reason"] == "INVALID_CREDENTIALS"

    def test_current_identity_and_logout(self):
        result = self.sessions.login("rana@example.com", "s3cret-pass")
        assert self.sessions.current_identity(result.token).employee_id == self.employee.id

        assert self.sessions.logout(result.token) is True
        assert self.sessions.current_identity(result.token) is None
        assert self.sessions.logout(result.token) is False

    def test_tampered_and_missing_tokens(self):
        result = self.sessions.login("rana@example.com", "s3cret-pass")
        forged = jwt.encode(
            jwt.decode(result.token, SECRET, algorithms=["HS256"]), FORGED_SECRET, algorithm="HS256"
        )
        assert self.sessions.current_identity(forged) is None
        assert self.sessions.current_identity(None) is None
        assert self.sessions.current_identity("not-a-jwt") is None

    def test_expired_session(self):
        result = self.sessions.login("rana@example.com", "s3cret-pass")
        data = self.storage.load("sessions", result.session_id)
        data["expires_at"] = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        self.storage.save("sessions", result.session_id, data)

        assert self.sessions.current_identity(result.token) is None
        with pytest.raises(SessionInvalid):
            self.sessions.context_for(result.token)

    def test_access_changes_apply_without_new_login(self):
        result = self.sessions.login("rana@example.com", "s3cret-pass")
        admin = make_context(Role.ADMIN)

        self.directory.update_access(admin, self.employee.id, role=Role.MANAGER,
                                     permissions=["can_freeze_account"])

        identity = self.sessions.current_identity(result.token)
        assert identity.role == Role.MANAGER
        assert identity.permissions == frozenset({Capability.FREEZE_ACCOUNT})

    def test_deactivated_employee_loses_session(self):
        result = self.sessions.login("rana@example.com", "s3cret-pass")
        data = self.storage.load("employees", self.employee.id)
        data["is_active"] = False
        self.storage.save("employees", self.employee.id, data)

        assert self.sessions.current_identity(result.token) is None

    def test_context_carries_session_and_correlation(self):
        result = self.sessions.login("rana@example.com", "s3cret-pass")
        ctx = self.sessions.context_for(result.token, correlation_id="req-42")

        assert ctx.session_id == result.session_id
        assert ctx.correlation_id == "req-42"
        assert ctx.employee_id == self.employee.id


class TestEmployeeDirectory:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.directory = EmployeeDirectory(
            self.storage, CredentialStore(self.storage), self.audit_trail
        )

    def test_provisioning_validates_input(self):
        with pytest.raises(ValidationError):
            self.directory.provision_employee("not-an-email", "longenough", "X", Role.TELLER)
        with pytest.raises(ValidationError):
            self.directory.provision_employee("a@example.com", "short", "X", Role.TELLER)

    def test_duplicate_email_rejected(self):
        self.directory.provision_employee("a@example.com", "longenough", "A", Role.TELLER)
        with pytest.raises(ValidationError):
            self.directory.provision_employee("A@example.com", "longenough", "B", Role.MANAGER)

    def test_update_access_is_admin_only(self):
        employee = self.directory.provision_employee("a@example.com", "longenough", "A", Role.TELLER)

        with pytest.raises(PermissionDenied):
            self.directory.update_access(make_context(Role.MANAGER), employee.id, role=Role.ADMIN)

        self.directory.update_access(make_context(Role.ADMIN), employee.id, role=Role.CUSTOMER_SERVICE)
        assert self.directory.get_employee(employee.id).role == Role.CUSTOMER_SERVICE

        events = self.audit_trail.get_events_by_type(AuditEventType.EMPLOYEE_ACCESS_CHANGED)
        assert events[0].metadata["old_role"] == "teller"
        assert events[0].metadata["new_role"] == "customer_service"

    def test_stored_permission_mapping_is_understood(self):
        employee = self.directory.provision_employee("a@example.com", "longenough", "A", Role.TELLER)
        data = self.storage.load("employees", employee.id)
        data["permissions"] = {"can_close_account": True, "can_edit_customer": False}
        self.storage.save("employees", employee.id, data)

        assert self.directory.get_employee(employee.id).permissions == frozenset({Capability.CLOSE_ACCOUNT})

    def test_identity_for_unknown_user(self):
        with pytest.raises(IdentityNotProvisioned):
            self.directory.identity_for_user("no-such-user")

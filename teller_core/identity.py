"""
Session & Identity Module

Resolves who is making a request. Credentials (the authentication
provider) and employee records (the identity subsystem) are kept apart:
a login that verifies credentials but finds no employee record is a
provisioning error, not a logged-in state.

Every engine call receives an explicit RequestContext; nothing in the core
reads a global "current employee".
"""

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, FrozenSet, Iterable, Optional

import jwt

from .audit import AuditEventType, AuditTrail
from .errors import IdentityNotProvisioned, InvalidCredentials, SessionInvalid, ValidationError
from .logging_config import get_logger, log_action
from .permissions import Capability, Operation, Role, parse_capabilities, parse_role, require
from .storage import StorageInterface, StorageRecord


@dataclass
class Credential(StorageRecord):
    """Email/password pair held by the authentication provider"""
    email: str
    user_id: str
    password_hash: str
    password_salt: str


@dataclass
class Employee(StorageRecord):
    """Employee record with role, permission flags and branch"""
    user_id: str
    email: str
    name: str
    role: Role
    permissions: FrozenSet[Capability] = field(default_factory=frozenset)
    branch: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class EmployeeIdentity:
    """Authenticated employee as seen by the authorization layer"""
    employee_id: str
    email: str
    name: str
    role: Role
    permissions: FrozenSet[Capability]
    branch: Optional[str] = None

    @classmethod
    def from_employee(cls, employee: Employee) -> 'EmployeeIdentity':
        return cls(
            employee_id=employee.id,
            email=employee.email,
            name=employee.name,
            role=employee.role,
            permissions=frozenset(employee.permissions),
            branch=employee.branch
        )


@dataclass(frozen=True)
class RequestContext:
    """Explicit per-request identity threaded through every engine call"""
    identity: EmployeeIdentity
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None

    @property
    def employee_id(self) -> str:
        return self.identity.employee_id


@dataclass
class Session(StorageRecord):
    """Login session referenced by the token's ``sid`` claim"""
    employee_id: str
    expires_at: datetime
    is_active: bool = True

    @property
    def is_valid(self) -> bool:
        return self.is_active and self.expires_at > datetime.now(timezone.utc)


@dataclass(frozen=True)
class LoginResult:
    token: str
    identity: EmployeeIdentity
    session_id: str
    expires_at: datetime


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialStore:
    """Authentication provider: email -> user id, scrypt password hashes"""

    def __init__(self, storage: StorageInterface, table_name: str = "credentials"):
        self.storage = storage
        self.table_name = table_name
        # Verified against when the email is unknown, so both paths cost one scrypt
        self._dummy_salt = secrets.token_hex(16)
        self._dummy_hash = self._hash_password(secrets.token_hex(16), self._dummy_salt)

    def register(self, email: str, password: str, user_id: Optional[str] = None) -> str:
        """Create or replace the credential for an email; returns the user id"""
        email = _normalize_email(email)
        existing = self._find(email)
        now = datetime.now(timezone.utc)
        salt = secrets.token_hex(16)

        credential = Credential(
            id=existing.id if existing else str(uuid.uuid4()),
            created_at=existing.created_at if existing else now,
            updated_at=now,
            email=email,
            user_id=user_id or (existing.user_id if existing else str(uuid.uuid4())),
            password_hash=self._hash_password(password, salt),
            password_salt=salt
        )
        self.storage.save(self.table_name, credential.id, credential.to_dict())
        return credential.user_id

    def authenticate(self, email: str, password: str) -> str:
        """
        Verify an email/password pair.

        Returns:
            The user id the credential belongs to

        Raises:
            InvalidCredentials: For an unknown email or a wrong password alike
        """
        credential = self._find(_normalize_email(email))
        if credential is None:
            self._verify(password, self._dummy_hash, self._dummy_salt)
            raise InvalidCredentials()
        if not self._verify(password, credential.password_hash, credential.password_salt):
            raise InvalidCredentials()
        return credential.user_id

    def _find(self, email: str) -> Optional[Credential]:
        rows = self.storage.find(self.table_name, {"email": email})
        return Credential.from_dict(rows[0]) if rows else None

    def _hash_password(self, password: str, salt: str) -> str:
        """Hash password with salt using scrypt"""
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()

    def _verify(self, password: str, expected_hash: str, salt: str) -> bool:
        return hmac.compare_digest(self._hash_password(password or "", salt), expected_hash)


class EmployeeDirectory:
    """Identity subsystem: employee records keyed by the provider's user id"""

    def __init__(self, storage: StorageInterface, credentials: CredentialStore,
                 audit_trail: AuditTrail, password_min_length: int = 6):
        self.storage = storage
        self.credentials = credentials
        self.audit_trail = audit_trail
        self.password_min_length = password_min_length
        self.table_name = "employees"
        self.logger = get_logger("teller_core.identity")

    def provision_employee(
        self,
        email: str,
        password: str,
        name: str,
        role: Role,
        permissions: Iterable[Any] = (),
        branch: Optional[str] = None
    ) -> Employee:
        """
        Create credentials and an employee record together.

        Args:
            email: Login email (case-insensitive)
            password: Initial password
            name: Display name
            role: Employee role
            permissions: Capability flags (enum members or flag names)
            branch: Branch affiliation

        Returns:
            Created Employee
        """
        email = _normalize_email(email)
        if not email or "@" not in email:
            raise ValidationError("A valid email is required", field="email")
        if len(password or "") < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters",
                field="password"
            )
        if self.find_by_email(email):
            raise ValidationError(f"Employee with email {email} already exists", field="email")

        user_id = self.credentials.register(email, password)
        now = datetime.now(timezone.utc)
        employee = Employee(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            email=email,
            name=name,
            role=parse_role(role),
            permissions=parse_capabilities(list(permissions)),
            branch=branch
        )
        self._save(employee)

        self.audit_trail.log_committed_event(
            AuditEventType.EMPLOYEE_PROVISIONED, "employee", employee.id,
            metadata={"email": email, "role": employee.role.value, "branch": branch}
        )
        return employee

    def get_employee(self, employee_id: str) -> Optional[Employee]:
        data = self.storage.load(self.table_name, employee_id)
        return self._employee_from_dict(data) if data else None

    def get_by_user_id(self, user_id: str) -> Optional[Employee]:
        rows = self.storage.find(self.table_name, {"user_id": user_id})
        return self._employee_from_dict(rows[0]) if rows else None

    def find_by_email(self, email: str) -> Optional[Employee]:
        rows = self.storage.find(self.table_name, {"email": _normalize_email(email)})
        return self._employee_from_dict(rows[0]) if rows else None

    def identity_for_user(self, user_id: str) -> EmployeeIdentity:
        """Resolve an authenticated user to an identity, or raise IdentityNotProvisioned"""
        employee = self.get_by_user_id(user_id)
        if employee is None:
            raise IdentityNotProvisioned(user_id)
        return EmployeeIdentity.from_employee(employee)

    def update_access(
        self,
        ctx: RequestContext,
        employee_id: str,
        role: Optional[Role] = None,
        permissions: Optional[Iterable[Any]] = None
    ) -> Employee:
        """Change an employee's role and/or permission flags (admin only)"""
        require(ctx.identity, Operation.ACCESS_ADMIN)

        employee = self.get_employee(employee_id)
        if employee is None:
            raise ValidationError(f"Employee {employee_id} not found", field="employee_id")

        old_role = employee.role
        old_permissions = employee.permissions
        if role is not None:
            employee.role = parse_role(role)
        if permissions is not None:
            employee.permissions = parse_capabilities(list(permissions))
        employee.updated_at = datetime.now(timezone.utc)
        self._save(employee)

        log_action(
            self.logger, "info", "Employee access changed",
            employee_id=ctx.employee_id, action="update_access",
            resource=f"employee:{employee_id}", correlation_id=ctx.correlation_id
        )
        self.audit_trail.log_committed_event(
            AuditEventType.EMPLOYEE_ACCESS_CHANGED, "employee", employee_id,
            metadata={
                "old_role": old_role.value,
                "new_role": employee.role.value,
                "old_permissions": sorted(p.value for p in old_permissions),
                "new_permissions": sorted(p.value for p in employee.permissions)
            },
            employee_id=ctx.employee_id, session_id=ctx.session_id
        )
        return employee

    def _save(self, employee: Employee) -> None:
        data = employee.to_dict()
        data['role'] = employee.role.value
        data['permissions'] = sorted(p.value for p in employee.permissions)
        self.storage.save(self.table_name, employee.id, data)

    def _employee_from_dict(self, data: Dict[str, Any]) -> Employee:
        return Employee(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            email=data['email'],
            name=data['name'],
            role=parse_role(data['role']),
            permissions=parse_capabilities(data.get('permissions')),
            branch=data.get('branch'),
            is_active=data.get('is_active', True)
        )


class SessionGate:
    """
    Login, session validation and logout.

    Tokens are signed JWTs whose ``sid`` claim names a stored Session, so a
    logout revokes the token before it expires.
    """

    def __init__(
        self,
        storage: StorageInterface,
        directory: EmployeeDirectory,
        audit_trail: AuditTrail,
        secret: str,
        algorithm: str = "HS256",
        expiry_hours: int = 8
    ):
        self.storage = storage
        self.directory = directory
        self.credentials = directory.credentials
        self.audit_trail = audit_trail
        self.secret = secret
        self.algorithm = algorithm
        self.expiry = timedelta(hours=expiry_hours)
        self.table_name = "sessions"
        self.logger = get_logger("teller_core.sessions")

    def login(self, email: str, password: str) -> LoginResult:
        """
        Authenticate and open a session.

        Raises:
            InvalidCredentials: Unknown email, wrong password or inactive employee
            IdentityNotProvisioned: Credentials valid but no employee record
        """
        try:
            user_id = self.credentials.authenticate(email, password)
            employee = self.directory.get_by_user_id(user_id)
            if employee is None:
                raise IdentityNotProvisioned(user_id)
            if not employee.is_active:
                raise InvalidCredentials()
        except (InvalidCredentials, IdentityNotProvisioned) as e:
            self.audit_trail.log_event(
                AuditEventType.LOGIN_FAILED, "session", _normalize_email(email),
                metadata={"reason": e.code}
            )
            log_action(
                self.logger, "warning", "Login failed",
                action="login", resource=f"login:{_normalize_email(email)}",
                extra={"reason": e.code}
            )
            raise

        now = datetime.now(timezone.utc)
        session = Session(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            employee_id=employee.id,
            expires_at=now + self.expiry
        )
        self._save(session)

        token = jwt.encode(
            {
                "sub": employee.id,
                "sid": session.id,
                "iat": int(now.timestamp()),
                "exp": int(session.expires_at.timestamp())
            },
            self.secret,
            algorithm=self.algorithm
        )

        self.audit_trail.log_committed_event(
            AuditEventType.LOGIN_SUCCESS, "session", session.id,
            employee_id=employee.id, session_id=session.id
        )
        log_action(
            self.logger, "info", "Login succeeded",
            employee_id=employee.id, action="login", resource=f"session:{session.id}"
        )
        return LoginResult(
            token=token,
            identity=EmployeeIdentity.from_employee(employee),
            session_id=session.id,
            expires_at=session.expires_at
        )

    def current_identity(self, token: Optional[str]) -> Optional[EmployeeIdentity]:
        """Identity behind a token, or None if the token or session is no longer valid"""
        resolved = self._resolve(token)
        return resolved[0] if resolved else None

    def context_for(self, token: Optional[str], correlation_id: Optional[str] = None) -> RequestContext:
        """Build a RequestContext from a token or raise SessionInvalid"""
        resolved = self._resolve(token)
        if resolved is None:
            raise SessionInvalid()
        identity, session_id = resolved
        return RequestContext(
            identity=identity,
            correlation_id=correlation_id or str(uuid.uuid4()),
            session_id=session_id
        )

    def logout(self, token: Optional[str]) -> bool:
        """Revoke the session behind a token; False if it was not active"""
        claims = self._decode(token)
        if claims is None:
            return False
        session = self._load(claims.get("sid"))
        if session is None or not session.is_active:
            return False

        session.is_active = False
        session.updated_at = datetime.now(timezone.utc)
        self._save(session)

        self.audit_trail.log_committed_event(
            AuditEventType.LOGOUT, "session", session.id,
            employee_id=session.employee_id, session_id=session.id
        )
        return True

    def _resolve(self, token: Optional[str]):
        claims = self._decode(token)
        if claims is None:
            return None

        session = self._load(claims.get("sid"))
        if session is None or not session.is_valid or session.employee_id != claims.get("sub"):
            return None

        # Re-read so role and flag changes apply without a new login
        employee = self.directory.get_employee(session.employee_id)
        if employee is None or not employee.is_active:
            return None
        return EmployeeIdentity.from_employee(employee), session.id

    def _decode(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        if not token:
            return None
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.InvalidTokenError:
            return None

    def _load(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        data = self.storage.load(self.table_name, session_id)
        if not data:
            return None
        data['expires_at'] = datetime.fromisoformat(data['expires_at'])
        return Session.from_dict(data)

    def _save(self, session: Session) -> None:
        data = session.to_dict()
        data['expires_at'] = session.expires_at.isoformat()
        self.storage.save(self.table_name, session.id, data)

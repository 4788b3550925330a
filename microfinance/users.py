"""
Users and Sessions Module

Login identities for administrators, supervisors and field collectors,
scrypt password hashing, and server-side web sessions. Bearer tokens for the
mobile client are issued by the API layer on top of `authenticate`.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import hashlib
import secrets
import uuid
import re

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import AuthError, ConflictError, NotFoundError, ValidationError


EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


class UserRole(Enum):
    """Back-office roles"""
    ADMIN = "ADMIN"
    SUPERVISOR = "SUPERVISOR"
    COLLECTOR = "COLLECTOR"


@dataclass
class User(StorageRecord):
    """Login identity"""
    email: str
    username: str
    name: str
    role: UserRole = UserRole.COLLECTOR
    phone: Optional[str] = None
    assigned_area: Optional[str] = None
    is_active: bool = True
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None
    last_login: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['role'] = self.role.value
        result['last_login'] = self.last_login.isoformat() if self.last_login else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['role'] = UserRole(data['role'])
        if data.get('last_login'):
            data['last_login'] = datetime.fromisoformat(data['last_login'])
        return cls(**data)

    def to_public_dict(self) -> Dict[str, Any]:
        """Representation safe to return over the API"""
        return {
            'id': self.id,
            'email': self.email,
            'username': self.username,
            'name': self.name,
            'role': self.role.value,
            'phone': self.phone,
            'assigned_area': self.assigned_area,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat(),
        }


@dataclass
class Session(StorageRecord):
    """Server-side web session"""
    user_id: str
    expires_at: datetime
    is_active: bool = True

    @property
    def is_valid(self) -> bool:
        return self.is_active and self.expires_at > datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['expires_at'] = self.expires_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'expires_at'):
            data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class UserManager:
    """Manages users, password verification and web sessions"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 password_min_length: int = 6, session_timeout_hours: int = 8):
        self.storage = storage
        self.audit_trail = audit_trail
        self.password_min_length = password_min_length
        self.session_timeout = timedelta(hours=session_timeout_hours)
        self.users_table = "users"
        self.sessions_table = "sessions"

    # User management

    def create_user(
        self,
        email: str,
        username: str,
        password: str,
        name: str,
        role: UserRole = UserRole.COLLECTOR,
        phone: Optional[str] = None,
        assigned_area: Optional[str] = None,
        is_active: bool = True,
        created_by: Optional[str] = None
    ) -> User:
        """
        Create a user

        Raises:
            ValidationError: Bad email, short username/password or empty name
            ConflictError: Email or username already taken
        """
        email = (email or "").strip().lower()
        username = (username or "").strip()
        self._validate_identity(email, username, name)
        self._validate_password(password)
        self._ensure_unique(email, username)

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            email=email,
            username=username,
            name=name.strip(),
            role=role,
            phone=phone,
            assigned_area=assigned_area,
            is_active=is_active
        )
        self._set_password(user, password)
        self.storage.save(self.users_table, user.id, user.to_dict())

        self.audit_trail.log_event(
            AuditEventType.USER_CREATED, "user", user.id,
            {"username": username, "role": role.value},
            user_id=created_by
        )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.users_table, user_id)
        return User.from_dict(data) if data else None

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def get_user_by_username(self, username: str) -> Optional[User]:
        found = self.storage.find(self.users_table, {"username": username})
        return User.from_dict(found[0]) if found else None

    def list_users(self, role: Optional[UserRole] = None) -> List[User]:
        """Users newest first, optionally filtered by role"""
        filters = {"role": role.value} if role else {}
        users = [User.from_dict(d) for d in self.storage.find(self.users_table, filters)]
        users.sort(key=lambda u: u.created_at, reverse=True)
        return users

    def update_user(self, user_id: str, updated_by: Optional[str] = None,
                    **changes: Any) -> User:
        """
        Update profile fields (name, email, username, phone, assigned_area,
        is_active). Passwords are changed through set_password.
        """
        user = self.require_user(user_id)
        allowed = {'name', 'email', 'username', 'phone', 'assigned_area', 'is_active'}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        if 'email' in changes and changes['email'] is not None:
            changes['email'] = changes['email'].strip().lower()

        email = changes.get('email') or user.email
        username = changes.get('username') or user.username
        name = changes.get('name') or user.name
        self._validate_identity(email, username, name)
        self._ensure_unique(email, username, exclude_id=user.id)

        for key, value in changes.items():
            if key in ('email', 'username', 'name') and value is None:
                continue
            setattr(user, key, value)
        user.touch()
        self.storage.save(self.users_table, user.id, user.to_dict())

        self.audit_trail.log_event(
            AuditEventType.USER_UPDATED, "user", user.id,
            {"fields": sorted(changes)}, user_id=updated_by
        )
        return user

    def set_password(self, user_id: str, password: str) -> None:
        user = self.require_user(user_id)
        self._validate_password(password)
        self._set_password(user, password)
        user.touch()
        self.storage.save(self.users_table, user.id, user.to_dict())

    # Authentication

    def authenticate(self, username: str, password: str) -> User:
        """
        Verify credentials

        Raises:
            AuthError: Unknown user, wrong password or inactive account
        """
        user = self.get_user_by_username(username)
        if not user or not self._verify_password(user, password):
            self.audit_trail.log_event(
                AuditEventType.LOGIN_FAILED, "user", user.id if user else username,
                {"username": username}
            )
            raise AuthError("Invalid credentials")

        if not user.is_active:
            raise AuthError("Account is disabled")

        user.last_login = datetime.now(timezone.utc)
        self.storage.save(self.users_table, user.id, user.to_dict())
        self.audit_trail.log_event(
            AuditEventType.LOGIN_SUCCESS, "user", user.id, {}, user_id=user.id
        )
        return user

    def create_session(self, user: User) -> Session:
        now = datetime.now(timezone.utc)
        session = Session(
            id=secrets.token_urlsafe(32),
            created_at=now,
            updated_at=now,
            user_id=user.id,
            expires_at=now + self.session_timeout
        )
        self.storage.save(self.sessions_table, session.id, session.to_dict())
        return session

    def validate_session(self, session_id: str) -> Optional[User]:
        """Return the session's user if the session is live and the user active"""
        data = self.storage.load(self.sessions_table, session_id)
        if not data:
            return None

        session = Session.from_dict(data)
        if not session.is_valid:
            return None

        user = self.get_user(session.user_id)
        if not user or not user.is_active:
            return None
        return user

    def logout(self, session_id: str) -> bool:
        def deactivate(data: Dict[str, Any]) -> Dict[str, Any]:
            data['is_active'] = False
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            return data

        data = self.storage.modify(self.sessions_table, session_id, deactivate)
        if not data:
            return False

        self.audit_trail.log_event(
            AuditEventType.LOGOUT, "user", data['user_id'], {}, user_id=data['user_id']
        )
        return True

    # Helpers

    def _validate_identity(self, email: str, username: str, name: str) -> None:
        if not EMAIL_PATTERN.match(email or ""):
            raise ValidationError("Invalid email address")
        if len(username or "") < 3:
            raise ValidationError("Username must be at least 3 characters")
        if not (name or "").strip():
            raise ValidationError("Name is required")

    def _validate_password(self, password: str) -> None:
        if len(password or "") < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters"
            )

    def _ensure_unique(self, email: str, username: str, exclude_id: Optional[str] = None) -> None:
        for field_name, value in (("email", email), ("username", username)):
            for existing in self.storage.find(self.users_table, {field_name: value}):
                if existing['id'] != exclude_id:
                    raise ConflictError("A user with this email or username already exists")

    def _hash_password(self, password: str, salt: str) -> str:
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()

    def _set_password(self, user: User, password: str) -> None:
        user.password_salt = secrets.token_hex(16)
        user.password_hash = self._hash_password(password, user.password_salt)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash or not user.password_salt:
            return False
        expected = self._hash_password(password or "", user.password_salt)
        return secrets.compare_digest(expected, user.password_hash)

"""
System container and authentication dependencies
"""

from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import MicrofinanceConfig, get_config
from ..currency import Currency
from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..users import UserManager, UserRole, User
from ..borrowers import BorrowerManager
from ..loans import LoanManager
from ..collections import CollectionManager
from ..reporting import ReportingEngine
from ..integrations import (
    AssetStore, HttpAssetStore, InMemoryAssetStore,
    BackupService, WebhookBackupService, LoggingBackupService
)
from ..errors import AuthError


security = HTTPBearer(auto_error=False)


class MicrofinanceSystem:
    """Back-office with all components initialized"""

    def __init__(
        self,
        config: Optional[MicrofinanceConfig] = None,
        storage: Optional[StorageInterface] = None,
        asset_store: Optional[AssetStore] = None,
        backup_service: Optional[BackupService] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        currency = Currency[self.config.currency]

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.asset_store = asset_store or self._create_asset_store()
        self.backup_service = backup_service or self._create_backup_service()

        self.user_manager = UserManager(
            self.storage, self.audit_trail,
            password_min_length=self.config.password_min_length,
            session_timeout_hours=self.config.session_timeout_hours
        )
        self.borrower_manager = BorrowerManager(
            self.storage, self.audit_trail, self.asset_store,
            asset_folder=self.config.asset_store_folder
        )
        self.loan_manager = LoanManager(self.storage, self.audit_trail, currency)
        self.collection_manager = CollectionManager(self.storage, self.audit_trail, self.loan_manager)
        self.reporting_engine = ReportingEngine(
            self.storage, self.loan_manager, self.collection_manager,
            currency=currency,
            report_timezone=self.config.report_timezone,
            top_collectors=self.config.dashboard_top_collectors,
            recent_payments=self.config.dashboard_recent_payments
        )

    def _create_asset_store(self) -> AssetStore:
        """HTTP asset store when a URL is configured, in-memory otherwise"""
        if not self.config.asset_store_url:
            return InMemoryAssetStore()
        return HttpAssetStore(
            base_url=self.config.asset_store_url,
            api_key=self.config.asset_store_api_key or None,
            timeout=self.config.asset_store_timeout
        )

    def _create_backup_service(self) -> BackupService:
        """Webhook backup when a URL is configured, logging otherwise"""
        if not self.config.backup_webhook_url:
            return LoggingBackupService()
        return WebhookBackupService(
            webhook_url=self.config.backup_webhook_url,
            api_key=self.config.backup_api_key or None,
            timeout=self.config.backup_timeout
        )

    def close(self) -> None:
        self.asset_store.close()
        self.backup_service.close()
        self.storage.close()


def get_system(request: Request) -> MicrofinanceSystem:
    return request.app.state.system


@dataclass
class Principal:
    """Authenticated caller"""
    user_id: str
    role: UserRole
    name: str
    session_id: Optional[str] = None


def create_access_token(user: User, config: MicrofinanceConfig) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user.id,
        "username": user.username,
        "role": user.role.value,
        "exp": now + timedelta(hours=config.jwt_expiry_hours),
        "iat": now
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def _user_from_token(token: str, system: MicrofinanceSystem) -> User:
    try:
        payload = jwt.decode(
            token, system.config.jwt_secret, algorithms=[system.config.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    user_id = payload.get("sub")
    user = system.user_manager.get_user(user_id) if user_id else None
    if not user or not user.is_active:
        raise AuthError("Invalid token")
    return user


def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: MicrofinanceSystem = Depends(get_system)
) -> Principal:
    """Bearer token first, then the session cookie"""
    if credentials:
        user = _user_from_token(credentials.credentials, system)
        return Principal(user_id=user.id, role=user.role, name=user.name)

    session_id = request.cookies.get(system.config.session_cookie_name)
    if session_id:
        user = system.user_manager.validate_session(session_id)
        if not user:
            raise AuthError("Session expired")
        return Principal(user_id=user.id, role=user.role, name=user.name, session_id=session_id)

    raise AuthError("Not authenticated")


def get_optional_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: MicrofinanceSystem = Depends(get_system)
) -> Optional[Principal]:
    """Like get_current_principal, but None for anonymous callers"""
    if not credentials and not request.cookies.get(system.config.session_cookie_name):
        return None
    return get_current_principal(request, credentials, system)


def require_role(*roles: UserRole):
    """Dependency factory for role checking"""
    def check(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in roles:
            raise AuthError("Insufficient permissions", status_code=403)
        return principal
    return check

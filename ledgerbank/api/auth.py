"""
Banking system container and authentication dependencies
"""

from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import LedgerBankConfig, get_config
from ..storage import StorageInterface, create_storage
from ..ledger import LedgerStore
from ..audit import AuditTrail
from ..notifications import NotificationDispatcher, WebhookChannelProvider
from ..transactions import TransactionEngine
from ..accounts import AccountManager
from ..loans import LoanManager
from ..beneficiaries import BeneficiaryManager
from ..reporting import ReportingService, CSVStatementRenderer
from ..exceptions import AuthenticationError, AuthorizationError


class BankingSystem:
    """All core components, wired from configuration"""

    def __init__(self, config: Optional[LedgerBankConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        cfg = self.config

        self.storage = storage or create_storage(cfg.database_url, cfg.database_busy_timeout)
        self.store = LedgerStore(self.storage, max_conflict_retries=cfg.max_conflict_retries)

        self.audit_trail = AuditTrail(self.storage) if cfg.enable_audit_logging else None

        self.notifier = None
        if cfg.enable_notifications:
            self.notifier = NotificationDispatcher(self.storage)
            if cfg.notification_webhook_url:
                self.notifier.register_provider(WebhookChannelProvider(cfg.notification_webhook_url))

        self.engine = TransactionEngine(
            self.store, self.audit_trail, self.notifier,
            max_description_length=cfg.max_description_length,
            default_currency=cfg.default_currency
        )
        self.account_manager = AccountManager(
            self.store, self.engine, self.audit_trail, self.notifier,
            default_currency=cfg.default_currency
        )
        self.loan_manager = LoanManager(
            self.store, self.engine, self.audit_trail, self.notifier,
            min_principal=cfg.min_loan_principal,
            max_interest_rate=cfg.max_loan_interest_rate,
            max_tenure_months=cfg.max_loan_tenure_months,
            payment_interval_days=cfg.loan_payment_interval_days
        )
        self.reporting = ReportingService(
            self.store, self.loan_manager,
            default_page_size=cfg.default_page_size,
            max_page_size=cfg.max_page_size,
            statement_default_days=cfg.statement_default_days
        )
        self.beneficiaries = BeneficiaryManager(self.store, self.engine, self.audit_trail)
        self.statement_renderer = CSVStatementRenderer()

    def close(self) -> None:
        """Release storage connections and notification channels"""
        if self.notifier:
            self.notifier.close()
        self.storage.close()


_banking_system: Optional[BankingSystem] = None


def get_banking_system() -> BankingSystem:
    """Dependency returning the process-wide banking system, built on first use"""
    global _banking_system
    if _banking_system is None:
        _banking_system = BankingSystem()
    return _banking_system


def shutdown_banking_system() -> None:
    global _banking_system
    if _banking_system is not None:
        _banking_system.close()
        _banking_system = None


# JWT Security
security = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    """Authenticated caller"""
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(user_id: str, role: str = "user",
                        config: Optional[LedgerBankConfig] = None) -> str:
    """Issue a signed bearer token for a user"""
    cfg = config or get_config()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=cfg.jwt_expiry_hours)
    }
    return jwt.encode(payload, cfg.jwt_secret, algorithm=cfg.jwt_algorithm)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Principal:
    """Dependency that validates the bearer token and returns the caller"""
    cfg = get_config()
    if not cfg.auth_enabled:
        return Principal(user_id="local_user", role="admin")

    if not credentials:
        raise AuthenticationError("Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, cfg.jwt_secret,
                             algorithms=[cfg.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")
    return Principal(user_id=user_id, role=payload.get("role", "user"))


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Dependency that only lets administrators through"""
    if not principal.is_admin:
        raise AuthorizationError("Admin access required")
    return principal

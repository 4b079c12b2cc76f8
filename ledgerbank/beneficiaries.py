"""
Beneficiary Management Module

Saved transfer recipients. An owner keeps a short list of payees (nickname,
account number, holder and bank details) and can send money to one without
retyping the account number. Removing a beneficiary only deactivates it.

A beneficiary whose account number belongs to an account held here is
marked verified; only verified beneficiaries can receive transfers, which go
through the Transaction Engine like any other transfer.
"""

from datetime import datetime, timezone
from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
import uuid

from .storage import StorageRecord
from .ledger import LedgerStore, LedgerEntry
from .accounts import AccountType
from .transactions import TransactionEngine
from .audit import AuditTrail, AuditAction
from .exceptions import (
    BeneficiaryNotFoundError, AuthorizationError, ValidationError, DuplicateEntryError
)
from .logging_config import get_logger, log_action, best_effort


MAX_NICKNAME_LENGTH = 50

EDITABLE_FIELDS = (
    "nickname", "account_number", "account_holder_name",
    "bank_name", "routing_code", "account_type"
)


@dataclass
class Beneficiary(StorageRecord):
    """A saved payee belonging to one user"""
    user_id: str
    nickname: str
    account_number: str
    account_holder_name: str
    bank_name: str
    routing_code: str
    account_type: AccountType
    is_verified: bool = False
    is_active: bool = True
    last_used: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['account_type'] = self.account_type.value
        result['last_used'] = self.last_used.isoformat() if self.last_used else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Beneficiary':
        data = dict(data)
        data['account_type'] = AccountType(data['account_type'])
        if data.get('last_used'):
            data['last_used'] = datetime.fromisoformat(data['last_used'])
        return super().from_dict(data)


class BeneficiaryManager:
    """
    Owner-scoped beneficiary CRUD and transfers to saved payees
    """

    def __init__(
        self,
        store: LedgerStore,
        engine: TransactionEngine,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.store = store
        self.storage = store.storage
        self.engine = engine
        self.audit_trail = audit_trail
        self.table = "beneficiaries"
        self.logger = get_logger("ledgerbank.beneficiaries")

    def _load(self, beneficiary_id: str, user_id: str) -> Beneficiary:
        data = self.storage.load(self.table, beneficiary_id)
        if not data or not data.get('is_active', True):
            raise BeneficiaryNotFoundError()
        beneficiary = Beneficiary.from_dict(data)
        if beneficiary.user_id != user_id:
            raise AuthorizationError("Beneficiary belongs to another user")
        return beneficiary

    def _save(self, beneficiary: Beneficiary) -> None:
        self.storage.save(self.table, beneficiary.id, beneficiary.to_dict())

    def _audit(self, action: AuditAction, beneficiary: Beneficiary, description: str,
               metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.audit_trail:
            best_effort(self.logger, "Audit record", self.audit_trail.record,
                        action, beneficiary.user_id, "beneficiary", beneficiary.id,
                        description, metadata=metadata)

    def _check_unique(self, user_id: str, account_number: str,
                      exclude_id: Optional[str] = None) -> None:
        for data in self.storage.find(self.table, {"user_id": user_id,
                                                   "account_number": account_number,
                                                   "is_active": True}):
            if data['id'] != exclude_id:
                raise DuplicateEntryError("Beneficiary with this account number already exists")

    @staticmethod
    def _clean(fields: Dict[str, Any]) -> Dict[str, Any]:
        """Trim text fields and check the ones that must not be blank"""
        cleaned = dict(fields)
        for name in ("nickname", "account_number", "account_holder_name", "bank_name", "routing_code"):
            if name in cleaned:
                value = str(cleaned[name] or "").strip()
                if not value:
                    raise ValidationError(f"{name.replace('_', ' ').capitalize()} is required")
                cleaned[name] = value
        if len(cleaned.get("nickname", "")) > MAX_NICKNAME_LENGTH:
            raise ValidationError(f"Nickname cannot exceed {MAX_NICKNAME_LENGTH} characters")
        if "routing_code" in cleaned:
            cleaned["routing_code"] = cleaned["routing_code"].upper()
        if "account_type" in cleaned and not isinstance(cleaned["account_type"], AccountType):
            try:
                cleaned["account_type"] = AccountType(cleaned["account_type"])
            except ValueError:
                raise ValidationError(f"Invalid account type: {cleaned['account_type']}")
        return cleaned

    def _is_held_here(self, account_number: str) -> bool:
        return self.store.find_account_by_number(account_number) is not None

    def add_beneficiary(
        self,
        user_id: str,
        nickname: str,
        account_number: str,
        account_holder_name: str,
        bank_name: str,
        routing_code: str,
        account_type: Union[AccountType, str]
    ) -> Beneficiary:
        """
        Save a new payee for a user

        Raises:
            ValidationError: If a required field is blank or too long
            DuplicateEntryError: If the user already saved this account number
        """
        fields = self._clean({
            "nickname": nickname,
            "account_number": account_number,
            "account_holder_name": account_holder_name,
            "bank_name": bank_name,
            "routing_code": routing_code,
            "account_type": account_type
        })
        now = datetime.now(timezone.utc)

        def add(store: LedgerStore) -> Beneficiary:
            self._check_unique(user_id, fields["account_number"])
            beneficiary = Beneficiary(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                is_verified=self._is_held_here(fields["account_number"]),
                **fields
            )
            self._save(beneficiary)
            return beneficiary

        beneficiary = self.store.with_atomic_unit(add)

        log_action(self.logger, "info", f"Added beneficiary {beneficiary.nickname}",
                   user_id=user_id, action="beneficiary_add",
                   resource=f"beneficiary:{beneficiary.id}")
        self._audit(AuditAction.BENEFICIARY_ADD, beneficiary, "Beneficiary added", {
            "account_number": beneficiary.account_number,
            "is_verified": beneficiary.is_verified
        })
        return beneficiary

    def list_beneficiaries(self, user_id: str) -> List[Beneficiary]:
        """Active beneficiaries, most recently used first, then newest"""
        beneficiaries = [
            Beneficiary.from_dict(data)
            for data in self.storage.find(self.table, {"user_id": user_id, "is_active": True})
        ]
        beneficiaries.sort(key=lambda b: b.created_at, reverse=True)
        beneficiaries.sort(key=lambda b: b.last_used.timestamp() if b.last_used else 0.0,
                           reverse=True)
        return beneficiaries

    def get_beneficiary(self, beneficiary_id: str, user_id: str) -> Beneficiary:
        return self._load(beneficiary_id, user_id)

    def update_beneficiary(self, beneficiary_id: str, user_id: str, **changes: Any) -> Beneficiary:
        """Edit a beneficiary's details; a new account number is re-verified"""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        beneficiary = self._load(beneficiary_id, user_id)
        fields = self._clean({k: v for k, v in changes.items() if v is not None})
        if not fields:
            return beneficiary

        if fields.get("account_number", beneficiary.account_number) != beneficiary.account_number:
            self._check_unique(user_id, fields["account_number"], exclude_id=beneficiary.id)
            beneficiary.is_verified = self._is_held_here(fields["account_number"])

        for name, value in fields.items():
            setattr(beneficiary, name, value)
        beneficiary.updated_at = datetime.now(timezone.utc)
        self._save(beneficiary)

        self._audit(AuditAction.BENEFICIARY_UPDATE, beneficiary, "Beneficiary updated",
                    {"fields": sorted(fields)})
        return beneficiary

    def remove_beneficiary(self, beneficiary_id: str, user_id: str) -> Beneficiary:
        """Deactivate a beneficiary; the record is kept"""
        beneficiary = self._load(beneficiary_id, user_id)
        beneficiary.is_active = False
        beneficiary.updated_at = datetime.now(timezone.utc)
        self._save(beneficiary)

        log_action(self.logger, "info", f"Removed beneficiary {beneficiary.nickname}",
                   user_id=user_id, action="beneficiary_remove",
                   resource=f"beneficiary:{beneficiary.id}")
        self._audit(AuditAction.BENEFICIARY_REMOVE, beneficiary, "Beneficiary removed")
        return beneficiary

    def transfer_to_beneficiary(
        self,
        user_id: str,
        beneficiary_id: str,
        from_account_id: str,
        amount: Union[Decimal, str],
        description: Optional[str] = None
    ) -> LedgerEntry:
        """
        Transfer from one of the user's accounts to a saved payee

        Raises:
            ValidationError: If the payee's account is not held at this bank
            (plus every error a transfer can raise)
        """
        beneficiary = self._load(beneficiary_id, user_id)
        destination = self.store.find_account_by_number(beneficiary.account_number)
        if destination is None:
            raise ValidationError("Beneficiary account is not held at this bank")

        entry = self.engine.transfer(
            user_id, from_account_id, destination.id, amount,
            description or f"Transfer to {beneficiary.nickname}"
        )

        beneficiary.last_used = entry.processed_at
        beneficiary.is_verified = True
        best_effort(self.logger, "Beneficiary last-used update", self._save, beneficiary)
        return entry

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.core.keyed_lock import KeyedLock
from app.core.security import encrypt_totp_seed, decrypt_totp_seed, digest
from app.services.backup_codes import ConsumeOutcome

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Per-principal 2FA credential record: the seed plus its backup codes.

    Implementations must give single-writer semantics per principal.
    """

    @abstractmethod
    def load_secret(self, principal_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def commit_secret(self, principal_id: str, secret: str, backup_codes: List[str]) -> None:
        pass

    @abstractmethod
    def mark_backup_code_consumed(self, principal_id: str, code: str) -> ConsumeOutcome:
        """Atomically flip one code from unused to consumed"""
        pass

    @abstractmethod
    def remaining_backup_codes(self, principal_id: str) -> int:
        pass

    @abstractmethod
    def remove(self, principal_id: str) -> bool:
        pass

    def is_enrolled(self, principal_id: str) -> bool:
        return self.load_secret(principal_id) is not None


@dataclass
class CredentialRecord:
    encrypted_secret: bytes
    # sha256 of the canonical code -> consumed (True) or unused (False)
    backup_codes: Dict[str, bool] = field(default_factory=dict)
    enrolled_at: float = field(default_factory=time.time)


def _code_key(principal_id: str, code: str) -> str:
    return digest("backup", principal_id, code)


class InMemoryCredentialStore(CredentialStore):
    """Reference store. Seeds are kept Fernet-encrypted and backup codes only as digests."""

    def __init__(self):
        self._records: Dict[str, CredentialRecord] = {}
        self._locks = KeyedLock()

    def load_secret(self, principal_id: str) -> Optional[str]:
        record = self._records.get(principal_id)
        if record is None:
            return None
        return decrypt_totp_seed(record.encrypted_secret)

    def commit_secret(self, principal_id: str, secret: str, backup_codes: List[str]) -> None:
        record = CredentialRecord(
            encrypted_secret=encrypt_totp_seed(secret),
            backup_codes={_code_key(principal_id, code): False for code in backup_codes},
        )
        with self._locks.hold(principal_id):
            replaced = principal_id in self._records
            self._records[principal_id] = record
        logger.info(f"2FA credential {'replaced' if replaced else 'committed'} for principal {principal_id}")

    def mark_backup_code_consumed(self, principal_id: str, code: str) -> ConsumeOutcome:
        key = _code_key(principal_id, code)
        with self._locks.hold(principal_id):
            record = self._records.get(principal_id)
            if record is None or key not in record.backup_codes:
                return ConsumeOutcome.NOT_FOUND
            if record.backup_codes[key]:
                return ConsumeOutcome.ALREADY_USED
            record.backup_codes[key] = True
            return ConsumeOutcome.CONSUMED

    def remaining_backup_codes(self, principal_id: str) -> int:
        with self._locks.hold(principal_id):
            record = self._records.get(principal_id)
            if record is None:
                return 0
            return sum(1 for used in record.backup_codes.values() if not used)

    def remove(self, principal_id: str) -> bool:
        with self._locks.hold(principal_id):
            return self._records.pop(principal_id, None) is not None

import logging
import re
import secrets
from enum import Enum
from typing import List, Optional

from app.core.config import BACKUP_CODE_COUNT

logger = logging.getLogger(__name__)

ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
BODY_LENGTH = 8
MIN_SET_SIZE = 10
MAX_SET_SIZE = 12

_CANONICAL_RE = re.compile(r"^[0-9A-Z]{4}-[0-9A-Z]{5}$")
_COMPACT_RE = re.compile(r"^[0-9A-Z]{9}$")


class ConsumeOutcome(str, Enum):
    CONSUMED = "consumed"
    INVALID_FORMAT = "invalid_format"
    ALREADY_USED = "already_used"
    NOT_FOUND = "not_found"


def checksum(body: str) -> str:
    """Weighted positional sum mod 36; weights are the 1-based positions"""
    total = sum(int(ch, 36) * position for position, ch in enumerate(body, start=1))
    return ALPHABET[total % 36]


def format_code(body: str) -> str:
    return f"{body[:4]}-{body[4:]}{checksum(body)}"


def normalize(value: str) -> Optional[str]:
    """Canonical XXXX-XXXXC form of user input, or None if it has the wrong shape"""
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"[^0-9A-Za-z-]", "", value).upper()
    if _COMPACT_RE.match(cleaned):
        cleaned = f"{cleaned[:4]}-{cleaned[4:]}"
    if not _CANONICAL_RE.match(cleaned):
        return None
    return cleaned


def validate_format(value: str) -> bool:
    """Shape and checksum check. Catches typos; it does not authenticate anything."""
    code = normalize(value)
    if code is None:
        return False
    body = code[:4] + code[5:9]
    return checksum(body) == code[9]


class BackupCodeManager:
    def __init__(self, count: int = BACKUP_CODE_COUNT):
        self.count = self._check_size(count)

    @staticmethod
    def _check_size(n: int) -> int:
        if not MIN_SET_SIZE <= n <= MAX_SET_SIZE:
            raise ValueError(f"A backup code set holds {MIN_SET_SIZE} to {MAX_SET_SIZE} codes, got {n}")
        return n

    def _new_code(self) -> str:
        body = "".join(secrets.choice(ALPHABET) for _ in range(BODY_LENGTH))
        return format_code(body)

    def generate_set(self, n: Optional[int] = None) -> List[str]:
        n = self.count if n is None else self._check_size(n)
        codes: List[str] = []
        seen = set()
        while len(codes) < n:
            code = self._new_code()
            if code in seen:
                logger.debug("Backup code collision inside one set, drawing again")
                continue
            seen.add(code)
            codes.append(code)
        return codes

    def consume(self, principal_id: str, code: str, store) -> ConsumeOutcome:
        """Mark a backup code used. The store's check-and-set decides races."""
        if not validate_format(code):
            return ConsumeOutcome.INVALID_FORMAT
        return store.mark_backup_code_consumed(principal_id, normalize(code))

import logging
import re
from typing import Iterable, Optional

# key=value / "key": "value" pairs whose value must never reach a log sink
_SENSITIVE_PAIR = re.compile(
    r"(?i)(\"?\b(?:secret|totp_secret|seed|code|otp|backup_code|backupcode|password|token|key)\b\"?\s*[:=]\s*\"?)"
    r"([^\s\",&}]+)"
)
# long base-32 runs look like TOTP seeds
_BASE32_RUN = re.compile(r"\b[A-Z2-7]{16,}={0,6}")

REDACTED = "***"


def redact(message: str) -> str:
    message = _SENSITIVE_PAIR.sub(lambda m: m.group(1) + REDACTED, message)
    return _BASE32_RUN.sub(REDACTED, message)


class SecretRedactionFilter(logging.Filter):
    """Masks seeds, codes and credentials in log records before they are emitted"""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def configure_logging(level: str = "INFO", handlers: Optional[Iterable[logging.Handler]] = None) -> None:
    """Set up root logging with the redaction filter on every handler"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    root = logging.getLogger()
    for handler in list(handlers or root.handlers):
        if not any(isinstance(f, SecretRedactionFilter) for f in handler.filters):
            handler.addFilter(SecretRedactionFilter())

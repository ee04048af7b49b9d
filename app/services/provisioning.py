from urllib.parse import quote, urlencode

from app.core.config import TOTP_DIGITS, TOTP_PERIOD
from app.core.exceptions import InvalidLabel


def _check_label(value: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidLabel(f"{field} must not be empty")
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in value):
        raise InvalidLabel(f"{field} contains control characters")
    return value.strip()


def build_provisioning_uri(secret: str, issuer: str, account: str) -> str:
    """otpauth:// URI for authenticator apps.

    The label is "issuer:account" with both parts percent-encoded; the colon
    between them stays literal, so an issuer may not contain one itself.
    The secret goes in without its "=" padding.
    """
    issuer = _check_label(issuer, "issuer")
    account = _check_label(account, "account")
    if ":" in issuer:
        raise InvalidLabel("issuer must not contain ':'")
    if not secret or not secret.strip("= "):
        raise InvalidLabel("secret must not be empty")

    label = f"{quote(issuer, safe='')}:{quote(account, safe='')}"
    params = urlencode(
        {
            "secret": secret.replace(" ", "").rstrip("=").upper(),
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"

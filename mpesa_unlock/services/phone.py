"""Kenyan MSISDN normalisation: local 07XXXXXXXX / 011XXXXXXX -> 2547XXXXXXXX / 25411XXXXXXX."""

import re

from mpesa_unlock.core.exceptions import InvalidPhoneError

COUNTRY_CODE = "254"
LOCAL_PHONE_RE = re.compile(r"^(?:07[0-9]{8}|011[0-9]{7})$")
_WHITESPACE_RE = re.compile(r"\s+")


def _strip(phone: str) -> str:
    return _WHITESPACE_RE.sub("", phone or "")


def is_valid_local_phone(phone: str) -> bool:
    return bool(LOCAL_PHONE_RE.match(_strip(phone)))


def normalize_phone(phone: str) -> str:
    """Return the gateway's international form; raise InvalidPhoneError for anything else."""
    raw = _strip(phone)
    if not LOCAL_PHONE_RE.match(raw):
        raise InvalidPhoneError()
    return COUNTRY_CODE + raw[1:]


def mask_msisdn(msisdn: str) -> str:
    """254727921038 -> 254*****1038, for logs and audit rows."""
    return re.sub(r"(\d{3})\d{5}(\d{2})", r"\1*****\2", msisdn or "")

"""
Phone and Reference Normalization

Payers reach the engine through several channels that spell the same phone
number differently (``254711000000``, ``0711000000``, ``+254711000000``,
``711 000 000``). Matching is done against every variant rather than a
single canonical form so that customer records entered by hand still match.
"""

import re
from datetime import datetime, timezone
from typing import List, Optional, Union

DEFAULT_COUNTRY_CODE = "254"

_STRIP_CHARS = re.compile(r"[\s\-\(\)\+]")
_LOCAL_MOBILE = re.compile(r"^0[17]\d{8}$")
_GATEWAY_TIMESTAMP = "%Y%m%d%H%M%S"


def _clean(phone: Union[str, int, None]) -> str:
    if phone is None:
        return ""
    return _STRIP_CHARS.sub("", str(phone))


def _local_digits(clean: str, country_code: str) -> Optional[str]:
    """Local ``0XXXXXXXXX`` form of a cleaned number, or None for unknown shapes"""
    if clean.startswith(country_code) and len(clean) == len(country_code) + 9:
        return "0" + clean[len(country_code):]
    if clean.startswith("0") and len(clean) == 10:
        return clean
    if len(clean) == 9 and clean.isdigit() and clean[0] != "0":
        return "0" + clean
    return None


def phone_variants(phone: Union[str, int, None],
                   country_code: str = DEFAULT_COUNTRY_CODE) -> List[str]:
    """
    All representational variants of a phone number.

    >>> phone_variants("0711 000 000")
    ['254711000000', '0711000000', '+254711000000']

    Unknown shapes yield only the cleaned input; blank input yields [].
    """
    clean = _clean(phone)
    if not clean:
        return []

    local = _local_digits(clean, country_code)
    if local is None:
        return [clean]

    international = country_code + local[1:]
    return [international, local, "+" + international]


def canonical_phone(phone: Union[str, int, None],
                    country_code: str = DEFAULT_COUNTRY_CODE) -> Optional[str]:
    """International digits form (``2547XXXXXXXX``) or None"""
    local = _local_digits(_clean(phone), country_code)
    if local is None:
        return None
    return country_code + local[1:]


def local_phone(phone: Union[str, int, None],
                country_code: str = DEFAULT_COUNTRY_CODE) -> Optional[str]:
    """Local ``0XXXXXXXXX`` form or None"""
    return _local_digits(_clean(phone), country_code)


def is_valid_mobile(phone: Union[str, int, None],
                    country_code: str = DEFAULT_COUNTRY_CODE) -> bool:
    local = local_phone(phone, country_code)
    return bool(local and _LOCAL_MOBILE.match(local))


def normalize_reference(reference: Optional[str]) -> Optional[str]:
    """Trim, drop inner whitespace and upper-case a bill/bank reference"""
    if reference is None:
        return None
    cleaned = re.sub(r"\s+", "", str(reference)).upper()
    return cleaned or None


def parse_gateway_timestamp(value: Optional[str]) -> datetime:
    """
    Parse an M-Pesa ``YYYYMMDDHHmmss`` timestamp into an aware UTC datetime.

    Missing or malformed values fall back to the current time.
    """
    if value:
        try:
            return datetime.strptime(str(value).strip(), _GATEWAY_TIMESTAMP).replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.now(timezone.utc)

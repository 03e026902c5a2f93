"""
Phone number normalisation for Daraja requests.

Daraja expects a 12-digit MSISDN with no "+" prefix, e.g. 254712345678.

Two policies share the same normalisation:
    normalize_strict      – STK Push; Safaricom (2547…) and Airtel (2541…) only
    normalize_permissive  – C2B simulate / B2C PartyB; any 254 + 9 digits
"""

import re
from typing import Any, Dict, Optional

from daraja_gateway.errors import ValidationError

_NON_DIGITS = re.compile(r'\D')
_STRICT = re.compile(r'^254[71]\d{8}$')
_PERMISSIVE = re.compile(r'^254\d{9}$')


def _to_msisdn(raw: str) -> str:
    digits = _NON_DIGITS.sub('', str(raw or ''))

    # A bare subscriber number may itself begin with 254
    if len(digits) == 9:
        return '254' + digits
    if digits.startswith('254'):
        return digits
    if digits.startswith('0'):
        return '254' + digits[1:]
    # Bare subscriber number (712345678) or garbage; the pattern check decides
    return '254' + digits


def _reject(raw: str, expected: str, context: Optional[Dict[str, Any]]) -> ValidationError:
    context = context or {}
    return ValidationError(
        f'Invalid phone number "{raw}". Expected {expected}.',
        operation=context.get('operation'),
        merchant_id=context.get('merchant_id'),
        context={'field': context.get('field', 'phone_number')},
    )


def normalize_strict(raw: str, context: Optional[Dict[str, Any]] = None) -> str:
    """
    Normalise a number that is about to be charged via STK Push.

    Accepts 07XXXXXXXX, 01XXXXXXXX, 2547XXXXXXXX, 2541XXXXXXXX, +254… and
    bare 9-digit subscriber numbers.

    Raises:
        ValidationError: if the result is not on the 2547 / 2541 ranges
    """
    msisdn = _to_msisdn(raw)
    if not _STRICT.match(msisdn):
        raise _reject(raw, '07XXXXXXXX, 01XXXXXXXX, 2547XXXXXXXX or +2547XXXXXXXX', context)
    return msisdn


def normalize_permissive(raw: str, context: Optional[Dict[str, Any]] = None) -> str:
    """Normalise any Kenyan MSISDN (Safaricom, Airtel, Telkom ...)."""
    msisdn = _to_msisdn(raw)
    if not _PERMISSIVE.match(msisdn):
        raise _reject(raw, 'a 12-digit Kenyan number starting with 254', context)
    return msisdn


def msisdn_to_int(raw: str, context: Optional[Dict[str, Any]] = None) -> int:
    """C2B simulate sends Msisdn as a JSON number, not a string."""
    return int(normalize_permissive(raw, context))

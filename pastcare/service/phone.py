from __future__ import annotations

import math
import re
from types import MappingProxyType
from typing import Mapping, Optional

# Dialing prefix -> country
DEFAULT_COUNTRY_CODES: Mapping[str, str] = MappingProxyType(
    {
        "+1": "USA/Canada",
        "+44": "United Kingdom",
        "+233": "Ghana",
        "+234": "Nigeria",
        "+254": "Kenya",
        "+27": "South Africa",
        "+256": "Uganda",
        "+255": "Tanzania",
        "+250": "Rwanda",
        "+263": "Zimbabwe",
        "+260": "Zambia",
        "+265": "Malawi",
        "+237": "Cameroon",
        "+225": "Ivory Coast",
        "+221": "Senegal",
        "+91": "India",
        "+86": "China",
        "+81": "Japan",
        "+49": "Germany",
        "+33": "France",
    }
)

_E164_RE = re.compile(r"^\+\d{7,15}$")
_STRIP_RE = re.compile(r"[^\d+]")

GSM_SINGLE_LIMIT = 160
GSM_HEADER = 7
UNICODE_SINGLE_LIMIT = 70
UNICODE_HEADER = 3


class CountryCodeTable:
    """Read-only prefix table, matched longest prefix first."""

    __slots__ = ("_codes", "_ordered")

    def __init__(self, codes: Mapping[str, str] = DEFAULT_COUNTRY_CODES) -> None:
        self._codes = MappingProxyType(dict(codes))
        self._ordered = tuple(sorted(self._codes, key=len, reverse=True))

    def match(self, number: str) -> Optional[str]:
        for prefix in self._ordered:
            if number.startswith(prefix):
                return prefix
        return None

    def country_name(self, prefix: str) -> Optional[str]:
        return self._codes.get(prefix)

    def __contains__(self, prefix: object) -> bool:
        return prefix in self._codes

    def __len__(self) -> int:
        return len(self._codes)


DEFAULT_TABLE = CountryCodeTable()


class PhoneNumberService:
    """E.164 normalization and SMS sizing."""

    def __init__(
        self,
        table: CountryCodeTable = DEFAULT_TABLE,
        *,
        default_country_code: str = "+233",
    ) -> None:
        self.table = table
        self.default_country_code = default_country_code

    def normalize(self, phone_number: Optional[str]) -> Optional[str]:
        """Normalize to E.164, assuming the default country for local numbers.

        ``"024 123 4567"`` becomes ``"+233241234567"`` with the default code.
        """
        if phone_number is None:
            return None
        normalized = _STRIP_RE.sub("", phone_number)
        if not normalized.startswith("+"):
            if normalized.startswith("0"):
                normalized = normalized[1:]
            normalized = self.default_country_code + normalized
        return normalized

    def extract_country_code(self, phone_number: Optional[str]) -> str:
        normalized = self.normalize(phone_number)
        if not normalized or not normalized.startswith("+"):
            return "OTHER"
        known = self.table.match(normalized)
        if known:
            return known
        if len(normalized) >= 2:
            # country codes run one to four digits
            return normalized[: min(len(normalized), 5)]
        return "OTHER"

    def is_local(self, phone_number: Optional[str]) -> bool:
        return self.extract_country_code(phone_number) == self.default_country_code

    def is_valid(self, phone_number: Optional[str]) -> bool:
        if phone_number is None or not phone_number.strip():
            return False
        return bool(_E164_RE.match(self.normalize(phone_number) or ""))

    @staticmethod
    def message_count(message: Optional[str]) -> int:
        """Number of SMS parts needed for ``message``.

        Any character outside 7-bit ASCII switches to the unicode limits.
        Concatenated parts lose a few characters each to the part header.
        """
        if not message:
            return 0
        unicode = any(ord(ch) > 127 for ch in message)
        limit = UNICODE_SINGLE_LIMIT if unicode else GSM_SINGLE_LIMIT
        header = UNICODE_HEADER if unicode else GSM_HEADER
        if len(message) <= limit:
            return 1
        return math.ceil(len(message) / (limit - header))

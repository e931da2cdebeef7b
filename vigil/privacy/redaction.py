"""
Redaction — keeping secrets and PII out of journals and logs.

Two pattern families are applied in order: credential material first (API
keys, bearer tokens, key=value secrets, private key blocks), then personal
data (emails, phone numbers, SSNs, card numbers, IP addresses). Secrets are
always redacted when the redactor is enabled; PII categories can be switched
off individually.

The session store runs every turn through ``redact()`` before it hits disk,
and the logging pipeline runs sensitive log fields through it before they
are rendered.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

_OCTET = r"(?:25[0-5]|2[0-4]\d|[01]?\d\d?)"


@dataclass
class RedactionResult:
    original_length: int
    redacted_length: int
    redactions_made: int
    categories_found: list[str] = field(default_factory=list)


SECRET_PATTERNS: list[tuple[str, re.Pattern, str]] = [
    (
        "private_key",
        re.compile(
            r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
            re.DOTALL,
        ),
        "[REDACTED_PRIVATE_KEY]",
    ),
    (
        "anthropic_key",
        re.compile(r"\bsk-ant-[A-Za-z0-9_-]{10,}"),
        "[REDACTED_API_KEY]",
    ),
    (
        "generic_api_key",
        re.compile(r"\b(?:sk|pk|rk)-[A-Za-z0-9]{20,}\b"),
        "[REDACTED_API_KEY]",
    ),
    (
        "github_token",
        re.compile(r"\bgh[pousr]_[A-Za-z0-9]{30,}\b"),
        "[REDACTED_TOKEN]",
    ),
    (
        "bearer",
        re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]{16,}=*"),
        "Bearer [REDACTED_TOKEN]",
    ),
    (
        "assignment",
        re.compile(
            r"(?i)\b(api[_-]?key|auth[_-]?token|access[_-]?token|secret|password|passwd)"
            r"(\s*[:=]\s*)(['\"]?)[^\s'\"]{6,}\3"
        ),
        r"\1\2[REDACTED]",
    ),
]


PII_PATTERNS: list[tuple[str, re.Pattern, str]] = [
    (
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[REDACTED_EMAIL]",
    ),
    (
        "phone_intl",
        re.compile(r"\+\d{1,3}[-.\s]?\d{1,4}[-.\s]?\d{1,4}[-.\s]?\d{1,9}\b"),
        "[REDACTED_PHONE_INTL]",
    ),
    (
        "phone_us",
        re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        "[REDACTED_PHONE]",
    ),
    (
        "ssn",
        re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
        "[REDACTED_SSN]",
    ),
    (
        "credit_card",
        re.compile(r"\b(?:(?:\d{4}[-\s]?){3}\d{4}|\d{4}[-\s]?\d{6}[-\s]?\d{5})\b"),
        "[REDACTED_CC]",
    ),
    (
        "ip_address",
        re.compile(r"\b" + r"\.".join([_OCTET] * 4) + r"\b"),
        "[REDACTED_IP]",
    ),
]


class PIIRedactor:
    """
    Detects and redacts secrets and PII from text.

    ``disabled_categories`` only applies to PII; a redactor that is enabled
    always masks credential material.
    """

    def __init__(
        self,
        enabled: bool = False,
        disabled_categories: Optional[list[str]] = None,
    ):
        self._enabled = enabled
        self._disabled_categories = set(disabled_categories or [])
        self._total_redaction_passes = 0
        self._total_redacted_items = 0
        self._lock = threading.Lock()

        self._active_patterns = list(SECRET_PATTERNS) + [
            (name, pattern, replacement)
            for name, pattern, replacement in PII_PATTERNS
            if name not in self._disabled_categories
        ]

    @property
    def enabled(self) -> bool:
        return self._enabled

    def redact(self, text: str) -> str:
        """Return *text* with every active pattern replaced."""
        if not self._enabled or not text:
            return text

        result = text
        items_this_call = 0
        for name, pattern, replacement in self._active_patterns:
            if name == "credit_card":
                # Luhn check keeps order numbers and timestamps intact.
                def _cc_replacer(m: re.Match) -> str:
                    digits = "".join(c for c in m.group() if c.isdigit())
                    return replacement if self._luhn_check(digits) else m.group()

                result, count = pattern.subn(_cc_replacer, result)
            else:
                result, count = pattern.subn(replacement, result)
            items_this_call += count

        if result != text:
            with self._lock:
                self._total_redaction_passes += 1
                self._total_redacted_items += items_this_call
        return result

    def scan(self, text: str) -> RedactionResult:
        """Report what ``redact()`` would find, regardless of ``enabled``."""
        if not text:
            return RedactionResult(original_length=0, redacted_length=0, redactions_made=0)

        redactions = 0
        categories: list[str] = []
        redacted = text
        for name, pattern, replacement in self._active_patterns:
            redacted, count = pattern.subn(replacement, redacted)
            if count:
                redactions += count
                categories.append(name)

        return RedactionResult(
            original_length=len(text),
            redacted_length=len(redacted),
            redactions_made=redactions,
            categories_found=categories,
        )

    @staticmethod
    def _luhn_check(digits: str) -> bool:
        nums = [int(d) for d in digits if d.isdigit()]
        if len(nums) < 2:
            return False
        total = 0
        for i, n in enumerate(reversed(nums)):
            if i % 2 == 1:
                n *= 2
                if n > 9:
                    n -= 9
            total += n
        return total % 10 == 0

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "enabled": self._enabled,
                "total_redaction_passes": self._total_redaction_passes,
                "total_redacted_items": self._total_redacted_items,
                "active_patterns": len(self._active_patterns),
            }

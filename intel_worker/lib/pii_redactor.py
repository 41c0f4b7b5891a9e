"""PII (Personally Identifiable Information) redaction utilities.

Contact enrichment payloads carry emails and phone numbers; they must not
reach the logs in plaintext.
"""

import re
from typing import Optional


class PIIRedactor:
    """Redact PII from text before logging."""

    PATTERNS = {
        'email': r'\b[\w.+-]+@[\w.-]+\.\w{2,}\b',
        'phone_intl': r'(?<!\w)\+\d{1,3}[\s\d/().-]{6,}\d',
        'phone_us': r'\(\d{3}\)\s?\d{3}-\d{4}\b',
        'credit_card': r'\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b',
    }

    @classmethod
    def redact(cls, text: Optional[str]) -> str:
        """
        Redact PII from text.

        Args:
            text: Text to redact

        Returns:
            Redacted text with PII replaced by [TYPE_REDACTED]
        """
        if not text:
            return ""

        result = text
        for name, pattern in cls.PATTERNS.items():
            result = re.sub(pattern, f'[{name.upper()}_REDACTED]', result, flags=re.IGNORECASE)

        return result

    @classmethod
    def redact_for_logging(cls, text: Optional[str]) -> str:
        """Redact PII for logging purposes."""
        return cls.redact(text)

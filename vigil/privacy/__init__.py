"""Privacy module — keeping secrets and personal data out of journals and logs."""

from vigil.privacy.redaction import PIIRedactor

__all__ = ["PIIRedactor"]

"""Identifier hashing for log records.

Student identifiers never appear raw in application logs. Anything that
logs a student id passes it through ``hash_pii`` first, which yields the
same opaque token for the same student across every service sharing the
salt.
"""
import hashlib
import hmac
import logging
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

MIN_SALT_LENGTH = 32

# Set once at startup from PII_HASH_SALT
_hash_key: Optional[bytes] = None


def configure_pii_salt(salt: str) -> None:
    """Install the key used for identifier hashing.

    Surrounding whitespace is ignored, so a salt padded out from an env
    file still has to carry ``MIN_SALT_LENGTH`` real characters.

    Raises:
        ValueError: If the salt is missing or too short
    """
    global _hash_key
    cleaned = (salt or "").strip()
    if len(cleaned) < MIN_SALT_LENGTH:
        logger.critical(
            "PII_SALT_REJECTED",
            extra={"salt_length": len(cleaned), "min_length": MIN_SALT_LENGTH}
        )
        raise ValueError(f"PII salt must be at least {MIN_SALT_LENGTH} characters")

    _hash_key = cleaned.encode("utf-8")
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(cleaned)})


def hash_pii(value) -> str:
    """Keyed SHA-256 digest of a student identifier, as 64 hex chars.

    Raises:
        RuntimeError: If ``configure_pii_salt`` has not run yet
    """
    if _hash_key is None:
        logger.critical("PII_HASH_UNCONFIGURED")
        raise RuntimeError("PII salt not configured; call configure_pii_salt() at startup")
    return hmac.new(_hash_key, str(value).encode("utf-8"), hashlib.sha256).hexdigest()


def hash_many(values: Iterable) -> List[str]:
    """Hash a batch of identifiers, preserving order."""
    return [hash_pii(v) for v in values]

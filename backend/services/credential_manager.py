"""Aggregator client credentials kept in the OS keychain."""

import logging

import keyring

logger = logging.getLogger(__name__)

SERVICE_NAME = "banklink"

# Only these settings may live in the keychain
CREDENTIAL_KEYS: frozenset[str] = frozenset(
    {
        "AGGREGATOR_CLIENT_ID",
        "AGGREGATOR_CLIENT_SECRET",
    }
)


def get_credential(key: str) -> str | None:
    """Keychain value for ``key``, or None when absent or the backend errors.

    Settings load calls this for every credential key, so a locked or
    missing keychain must not stop the app from starting.
    """
    try:
        return keyring.get_password(SERVICE_NAME, key)
    except Exception:
        logger.debug("Keychain read failed for %s", key, exc_info=True)
        return None


def set_credential(key: str, value: str) -> bool:
    """Save an aggregator credential; False if rejected or the write failed."""
    if key not in CREDENTIAL_KEYS:
        logger.warning("Refusing to store %s: not an aggregator credential", key)
        return False
    if not value or not value.strip():
        logger.warning("Refusing to store blank value for %s", key)
        return False

    try:
        keyring.set_password(SERVICE_NAME, key, value)
    except Exception:
        logger.warning("Keychain write failed for %s", key, exc_info=True)
        return False
    logger.info("Saved %s to keychain", key)
    return True

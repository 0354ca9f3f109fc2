"""
Secrets: keychain lookups and the encrypted Telethon session file.

Credentials (API id/hash, bot token, session key) live in the system
keychain (``secret-tool`` / libsecret) and are fetched at startup.  In
development an environment variable ``TG_ARCHIVER_<KEY>`` is accepted
instead.

The Telethon session file is Fernet-encrypted at rest; the archiver
decrypts it into memory and only writes the plaintext to tmpfs.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from cryptography.fernet import Fernet

logger = logging.getLogger("shared.secrets")

_SERVICE = "tg-archiver"


def _env_key(key_name: str) -> str:
    return f"TG_ARCHIVER_{key_name.upper().replace('-', '_')}"


def get_secret(key_name: str, service: str = _SERVICE) -> str:
    """Look up *key_name* in the keychain, then in the environment.

    Keychain query::

        secret-tool lookup service tg-archiver key <key_name>

    Raises:
        RuntimeError: If neither source has the secret.  Callers treat
            this as a fatal configuration error.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.warning("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")

    env_key = _env_key(key_name)
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


def encrypt_session_file(path: Path, key: str) -> None:
    """Encrypt a plaintext Telethon session file in place (mode 0600)."""
    ciphertext = Fernet(key.encode()).encrypt(path.read_bytes())
    path.write_bytes(ciphertext)
    path.chmod(0o600)
    logger.info("Session file encrypted: %s", path)


def decrypt_session_file(path: Path, key: str) -> bytes:
    """Return the decrypted session bytes without touching disk.

    Raises:
        FileNotFoundError: If the session file does not exist.
        cryptography.fernet.InvalidToken: Wrong key or tampered file.
    """
    plaintext = Fernet(key.encode()).decrypt(path.read_bytes())
    logger.info("Session file decrypted in memory: %s", path)
    return plaintext


def generate_encryption_key() -> str:
    """New Fernet key for ``session_encryption_key`` (run once at setup)."""
    return Fernet.generate_key().decode()

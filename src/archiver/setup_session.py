"""
One-time Telegram login that produces the encrypted session file.

Runnable as::

    python -m archiver.setup_session        # from src/
    tg-archiver-setup-session               # installed entry point

Logs in interactively (phone number, login code, 2FA password) with a
plain Telethon client, because signing in is not a read-only operation.
The plaintext session only exists on tmpfs.  It is Fernet-encrypted
there and then moved to ``archiver.session_path``.

When no ``session_encryption_key`` is stored yet, a new key is generated
and printed together with the ``secret-tool`` command that stores it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Optional, Tuple

import toml
from telethon import TelegramClient as TelethonClient

from archiver.main import load_config
from shared.secrets import encrypt_session_file, generate_encryption_key, get_secret

logger = logging.getLogger("archiver.setup_session")


def resolve_encryption_key() -> Tuple[str, bool]:
    """Return ``(key, generated)``; a fresh key is generated if none is stored."""
    try:
        return get_secret("session_encryption_key"), False
    except RuntimeError:
        logger.info("No session encryption key stored; generating one")
        return generate_encryption_key(), True


async def create_session(
    session_path: Path,
    api_id: int,
    api_hash: str,
    key: str,
) -> Optional[str]:
    """Log in, encrypt the new session and move it to *session_path*.

    Returns:
        The username (or id) of the account that logged in.

    Raises:
        FileExistsError: If *session_path* already exists.
    """
    if session_path.exists():
        raise FileExistsError(f"Session file already exists: {session_path}")

    shm_dir = "/dev/shm" if os.path.isdir("/dev/shm") else None
    work_dir = tempfile.mkdtemp(prefix="tg-archiver-", dir=shm_dir)
    session_base = os.path.join(work_dir, "archiver")
    try:
        client = TelethonClient(session_base, api_id, api_hash)
        await client.start()
        try:
            me = await client.get_me()
        finally:
            await client.disconnect()

        plain = Path(session_base + ".session")
        encrypt_session_file(plain, key)
        session_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(plain), session_path)
        session_path.chmod(0o600)
        logger.info("Encrypted session written to %s", session_path)
        return getattr(me, "username", None) or str(getattr(me, "id", ""))
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)


async def interactive_main() -> int:
    """Run the login flow; returns a process exit code."""
    try:
        config = load_config()
        api_id = int(get_secret("api_id"))
        api_hash = get_secret("api_hash")
    except (FileNotFoundError, KeyError, ValueError, RuntimeError, toml.TomlDecodeError) as exc:
        print(f"Error: {exc}")
        return 1

    session_path = Path(config["archiver"]["session_path"])
    key, generated = resolve_encryption_key()

    try:
        account = await create_session(session_path, api_id, api_hash, key)
    except FileExistsError as exc:
        print(f"Error: {exc}")
        print("Remove it first to log in again.")
        return 1

    print()
    print(f"Logged in as {account}.")
    print(f"Encrypted session saved to {session_path}")
    if generated:
        print()
        print("A new session encryption key was generated. Store it with:")
        print()
        print(
            "  secret-tool store --label='tg-archiver session key' "
            "service tg-archiver key session_encryption_key"
        )
        print()
        print(f"and paste this value when prompted:\n\n  {key}\n")
        print("Without it the archiver cannot decrypt the session.")
    return 0


def main() -> None:
    """Synchronous entry point."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(interactive_main()))


if __name__ == "__main__":
    main()

"""
ReadOnlyTelegramClient: allowlist proxy around Telethon's TelegramClient.

The archiver only ever reads history.  Every attribute lookup goes
through an explicit allowlist of read methods; everything else (sending,
editing, deleting, joining, ...) raises ``PermissionError`` and is logged
at CRITICAL level.

Raw MTProto requests (``await client(request)``) are allowed only for
the request types in ``ALLOWED_REQUESTS``; forum topics have no
high-level Telethon method, so listing them needs one.
"""

from __future__ import annotations

import logging
import time
from typing import Any, FrozenSet
from weakref import WeakKeyDictionary

from telethon import TelegramClient as TelethonClient

logger = logging.getLogger("archiver.readonly_client")

# Read-only Telethon methods used by the archiver.  Do NOT add
# send_message, edit_message, delete_messages or anything else that
# changes server-side state.
ALLOWED_METHODS: FrozenSet[str] = frozenset(
    {
        # History
        "get_messages",
        # Entity resolution (get_dialogs warms the entity cache)
        "get_entity",
        "get_dialogs",
        "get_me",
        # Connection lifecycle
        "connect",
        "disconnect",
        "is_connected",
    }
)

# Raw request classes (by name) that only read state.
ALLOWED_REQUESTS: FrozenSet[str] = frozenset(
    {
        "GetForumTopicsRequest",
    }
)

# State lives outside the instance so ``object.__getattribute__`` tricks
# cannot reach the wrapped client.
_WRAPPED: "WeakKeyDictionary[ReadOnlyTelegramClient, TelethonClient]" = WeakKeyDictionary()

# Names resolved on the proxy itself rather than on the wrapped client.
_OWN_ATTRIBUTES: FrozenSet[str] = frozenset(
    {
        "__class__",
        "__repr__",
        "__aenter__",
        "__aexit__",
        "__call__",
        "__setattr__",
        "__delattr__",
        "__getattribute__",
        "_wrapped",
    }
)


def _deny(kind: str, name: str, message: str) -> PermissionError:
    """Log a blocked access at CRITICAL and build the error to raise."""
    logger.critical("DENIED   | %s=%-24s ts=%.3f | %s", kind, name, time.time(), message)
    return PermissionError(f"ReadOnlyTelegramClient: {message}")


class ReadOnlyTelegramClient:
    """Read-only proxy around a TelethonClient instance.

    Usage::

        async with ReadOnlyTelegramClient(raw_client) as client:
            entity = await client.get_entity(chat_id)
            page = await client.get_messages(entity, limit=100)
    """

    __slots__ = ("__weakref__",)

    def __init__(self, client: TelethonClient) -> None:
        _WRAPPED[self] = client

    @staticmethod
    def _wrapped(proxy: "ReadOnlyTelegramClient") -> TelethonClient:
        try:
            return _WRAPPED[proxy]
        except KeyError:
            raise PermissionError("ReadOnlyTelegramClient: no wrapped client.") from None

    async def __aenter__(self) -> "ReadOnlyTelegramClient":
        await ReadOnlyTelegramClient._wrapped(self).connect()
        logger.info("Read-only Telegram session connected")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await ReadOnlyTelegramClient._wrapped(self).disconnect()
        logger.info("Read-only Telegram session disconnected")

    async def __call__(self, request: Any) -> Any:
        """Invoke a raw request if its type is on ``ALLOWED_REQUESTS``."""
        name = type(request).__name__
        if name not in ALLOWED_REQUESTS:
            raise _deny("request", name, f"raw request '{name}' is denied.")
        logger.debug("ALLOWED  | request=%s", name)
        return await ReadOnlyTelegramClient._wrapped(self)(request)

    def __getattribute__(self, name: str) -> Any:
        """Return allowlisted methods of the wrapped client; deny the rest.

        Non-callable members (``client.session`` and the like) are denied
        even when their name is allowlisted.  Any unexpected failure while
        checking is treated as a denial.
        """
        if name in _OWN_ATTRIBUTES:
            return object.__getattribute__(self, name)
        if name.startswith("_"):
            raise _deny("attr", name, f"internal attribute access to '{name}' is denied.")
        if name not in ALLOWED_METHODS:
            raise _deny(
                "method",
                name,
                f"access to '{name}' is denied. Allowed: {sorted(ALLOWED_METHODS)}",
            )

        try:
            member = getattr(ReadOnlyTelegramClient._wrapped(self), name)
        except PermissionError:
            raise
        except Exception as exc:
            logger.critical("Allowlist lookup of %s failed", name, exc_info=True)
            raise _deny("method", name, f"access to '{name}' denied (lookup failed).") from exc
        if not callable(member):
            raise _deny("method", name, f"allowed member '{name}' is not callable.")
        logger.debug("ALLOWED  | method=%s", name)
        return member

    def __setattr__(self, name: str, value: Any) -> None:
        raise PermissionError("ReadOnlyTelegramClient: attributes are read-only.")

    def __delattr__(self, name: str) -> None:
        raise PermissionError("ReadOnlyTelegramClient: attributes cannot be deleted.")

    def __repr__(self) -> str:
        client = ReadOnlyTelegramClient._wrapped(self)
        return (
            f"<ReadOnlyTelegramClient methods={len(ALLOWED_METHODS)} "
            f"requests={sorted(ALLOWED_REQUESTS)} connected={client.is_connected()}>"
        )

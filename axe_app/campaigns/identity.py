"""
Participant identity: an anonymous device fingerprint plus an optional user.

Fingerprinting can hang (slow devices, blocked scripts), so the resolver races
it against a timeout. When the timeout wins, or fingerprinting fails, the
identity carries a clearly marked fallback token and deduplication for that
session becomes best-effort.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hashlib
import logging
import secrets
import string
from typing import Awaitable, Callable

from django.conf import settings

logger = logging.getLogger(__name__)

TIMEOUT_PREFIX = "anon-"
FAILURE_PREFIX = "fp-fallback-"
FINGERPRINT_HEADER = "HTTP_X_FINGERPRINT_ID"

_BASE36 = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class Identity:
    fingerprint_id: str
    user_id: int | None = None
    is_fallback: bool = False

    def same_participant(self, other: "Identity") -> bool:
        """Either signal alone identifies the same participant."""
        if self.fingerprint_id and self.fingerprint_id == other.fingerprint_id:
            return True
        return self.user_id is not None and self.user_id == other.user_id


def _random_token(length: int = 9) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def fallback_identity(prefix: str, user_id: int | None = None) -> Identity:
    return Identity(
        fingerprint_id=f"{prefix}{_random_token()}",
        user_id=user_id,
        is_fallback=True,
    )


async def resolve_identity(
    fingerprint_source: Callable[[], Awaitable[str]],
    user_id: int | None = None,
    timeout: float | None = None,
) -> Identity:
    """Derive the participant identity.

    Args:
        fingerprint_source: coroutine function returning the device fingerprint
        user_id: authenticated user id, if any
        timeout: seconds to wait for the fingerprint (defaults to
            ``settings.AXE_FINGERPRINT_TIMEOUT``)
    """
    if timeout is None:
        timeout = getattr(settings, "AXE_FINGERPRINT_TIMEOUT", 2.0)
    try:
        fingerprint = await asyncio.wait_for(fingerprint_source(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Fingerprint timed out after %ss, using fallback identity", timeout)
        return fallback_identity(TIMEOUT_PREFIX, user_id)
    except Exception as exc:
        logger.warning("Fingerprint failed (%s), using fallback identity", exc)
        return fallback_identity(FAILURE_PREFIX, user_id)

    if not fingerprint:
        logger.warning("Fingerprint source returned nothing, using fallback identity")
        return fallback_identity(FAILURE_PREFIX, user_id)
    return Identity(fingerprint_id=str(fingerprint), user_id=user_id)


def request_fingerprint(request) -> Callable[[], Awaitable[str]]:
    """Build a fingerprint source for an HTTP request.

    Prefers the visitor id computed by the browser (``X-Fingerprint-Id`` header
    or ``fingerprint_id`` field); otherwise digests a few stable request headers.
    """

    async def source() -> str:
        supplied = request.META.get(FINGERPRINT_HEADER)
        if not supplied:
            data = getattr(request, "data", None) or {}
            supplied = data.get("fingerprint_id") if hasattr(data, "get") else None
        if supplied:
            return str(supplied)[:64]
        parts = [
            request.META.get("HTTP_USER_AGENT", ""),
            request.META.get("HTTP_ACCEPT_LANGUAGE", ""),
            request.META.get("REMOTE_ADDR", ""),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]

    return source

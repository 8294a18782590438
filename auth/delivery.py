"""
auth/delivery.py -- Senders that hand single-use and restore codes to a channel.

A sender is any callable `send(contact, code) -> None` that raises on failure.
The core wraps failures into DeliveryFailure and never retries: a user who
did not receive a code asks for a new one.

Three senders ship here:
  webhook_sender(url)  -- POSTs {"contact", "code"} as JSON to an SMS/email
                          gateway. Used whenever DELIVERY_WEBHOOK_URL is set.
  log_sender           -- writes the code to the log. DEBUG mode only, for
                          local development without a gateway.
  unconfigured_sender  -- always fails; production without a gateway.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

import requests

from auth.errors import AuthError, DeliveryFailure

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("tokenauth.delivery")

# Shared session for connection pooling. Gateways are configured endpoints,
# so a short redirect chain is plenty.
_session = requests.Session()
_session.max_redirects = 3


def webhook_sender(url: str, timeout: int = 10) -> Callable[[str, str], None]:
    """Return a sender that POSTs each code to url.

    Any non-2xx status or network error raises DeliveryFailure. The code is
    not included in the log line.
    """

    def send(contact: str, code: str) -> None:
        try:
            resp = _session.post(url, json={"contact": contact, "code": code}, timeout=timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Code delivery to gateway failed: %s", e)
            raise DeliveryFailure() from e

    return send


def log_sender(contact: str, code: str) -> None:
    logger.warning("DEBUG delivery: code %s for %s", code, contact)


def unconfigured_sender(contact: str, code: str) -> None:
    logger.error("Code delivery requested but DELIVERY_WEBHOOK_URL is not configured")
    raise DeliveryFailure("No delivery channel is configured.")


def build_sender(settings: Settings) -> Callable[[str, str], None]:
    """Pick the sender matching the configuration."""
    if settings.delivery_webhook_url:
        return webhook_sender(settings.delivery_webhook_url, settings.delivery_timeout_seconds)
    if settings.debug:
        return log_sender
    return unconfigured_sender


def deliver(sender: Callable[[str, str], None], contact: str, code: str) -> None:
    """Call sender, turning any failure it raises into DeliveryFailure."""
    try:
        sender(contact, code)
    except AuthError:
        raise
    except Exception as exc:
        logger.warning("Code sender raised %s", type(exc).__name__)
        raise DeliveryFailure() from exc

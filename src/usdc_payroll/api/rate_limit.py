"""Inbound request limits.

One limiter per process, keyed by client address. Every API route shares the
general window; CSV uploads and webhooks carry an extra, tighter window of
their own. ``configure_limits`` loads the windows from settings and clears the
counters, so each application starts from zero.
"""

import logging

from limits import parse_many
from slowapi import Limiter
from slowapi.util import get_remote_address

from usdc_payroll.config import Settings
from usdc_payroll.errors import ConfigurationError

logger = logging.getLogger(__name__)

API_LIMIT_MESSAGE = "Too many requests, please try again later"
UPLOAD_LIMIT_MESSAGE = "Too many file uploads, please try again later"
WEBHOOK_LIMIT_MESSAGE = "Webhook rate limit exceeded"

# Route limits raise with their message as detail; anything else is the API window
LIMIT_CODES = {
    UPLOAD_LIMIT_MESSAGE: "UPLOAD_RATE_LIMIT_EXCEEDED",
    WEBHOOK_LIMIT_MESSAGE: "WEBHOOK_RATE_LIMIT_EXCEEDED",
}

_limits = {
    "api": Settings.api_rate_limit,
    "upload": Settings.upload_rate_limit,
    "webhook": Settings.webhook_rate_limit,
}


def api_limit() -> str:
    return _limits["api"]


def upload_limit() -> str:
    return _limits["upload"]


def webhook_limit() -> str:
    return _limits["webhook"]


limiter = Limiter(
    key_func=get_remote_address,
    application_limits=[api_limit],
    storage_uri="memory://",
)


def configure_limits(settings: Settings) -> None:
    """Apply the configured windows and reset all counters.

    Raises:
        ConfigurationError: a window is not a valid rate limit string.
    """
    windows = {
        "api": settings.api_rate_limit,
        "upload": settings.upload_rate_limit,
        "webhook": settings.webhook_rate_limit,
    }
    for name, value in windows.items():
        try:
            parse_many(value)
        except ValueError:
            raise ConfigurationError(f"Invalid {name} rate limit: {value!r}") from None
    _limits.update(windows)
    limiter.enabled = settings.rate_limit_enabled
    limiter.reset()
    if settings.rate_limit_enabled:
        logger.info(
            "Inbound limits: api %s, upload %s, webhook %s",
            windows["api"], windows["upload"], windows["webhook"],
        )
    else:
        logger.info("Inbound rate limiting disabled")


def limit_error(detail: str) -> tuple[str, str]:
    """(message, code) for a rejected request."""
    code = LIMIT_CODES.get(detail)
    if code is None:
        return API_LIMIT_MESSAGE, "RATE_LIMIT_EXCEEDED"
    return detail, code

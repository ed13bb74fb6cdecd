"""
Sentry Error Tracking
=====================

Reports ledger failures that are handled locally and would otherwise only
reach the logs (attribution deliveries, swallowed background errors).

Related files:
- conversion_ledger/main.py: calls init_sentry() while building the app
- conversion_ledger/services/attribution_fanout.py: reports failed deliveries

Environment Variables:
- SENTRY_DSN: project DSN; reporting is a no-op when unset
- ENVIRONMENT: deployment name attached to every event (default "development")
- RELEASE_VERSION: release tag, set by CI/CD
"""

from __future__ import annotations

import os
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def get_sentry_dsn() -> Optional[str]:
    dsn = os.environ.get("SENTRY_DSN", "").strip()
    return dsn or None


def init_sentry() -> bool:
    """
    Configure the Sentry SDK once per process.

    Returns:
        False when SENTRY_DSN is missing or the SDK refused the config.
    """
    dsn = get_sentry_dsn()
    if dsn is None:
        logger.debug("[SENTRY] SENTRY_DSN not set, error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")
    ledger_logging = LoggingIntegration(
        level=logging.INFO,          # breadcrumbs
        event_level=logging.ERROR,   # events
    )

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=os.environ.get("RELEASE_VERSION"),
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                ledger_logging,
            ],
            traces_sample_rate=0.1,
            # Customer emails must not leave with request data
            send_default_pii=False,
        )
    except Exception as e:
        logger.error(f"[SENTRY] init rejected: {e}")
        return False

    logger.info(f"[SENTRY] Reporting enabled ({environment})")
    return True


@contextmanager
def _scope_with(extra: Optional[dict]) -> Iterator[None]:
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        yield


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Send a handled exception with optional context.

    Example:
        except Exception as e:
            capture_exception(e, extra={"event_id": conversion.event_id})
    """
    try:
        with _scope_with(extra):
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Could not report exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Send a non-exception event, e.g. one failed delivery result."""
    try:
        with _scope_with(extra):
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Could not report message: {e}")

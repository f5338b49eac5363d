from __future__ import annotations

import logging

from ingress_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def handle_error(err: BaseException) -> None:
    """Report an error nobody else will act on.

    This is the process-wide sink for failures that were given up on.  It
    logs with the traceback and counts the error, but never raises, so one
    bad key cannot take the controller down.
    """
    METRICS.unhandled_errors_total.inc()
    LOGGER.error(
        "Unhandled error: %s",
        err,
        exc_info=(type(err), err, err.__traceback__),
    )

"""
billing_recon – recomputes a customer's "spent this month" figure from the
paginated wallet ledger and cross-checks it against the server summary.

The package does **not** configure logging on import – the billing console
or the CLI that embeds it owns the logging setup.  A ``NullHandler`` is
attached so library use stays quiet, and :func:`configure_logging` gives
scripts a one-call console setup.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)          # "billing_recon"
logger.addHandler(logging.NullHandler())


def configure_logging(level: int = logging.INFO) -> None:
    """
    Configure a basic ``logging.basicConfig`` for the whole package if the
    application has not already configured logging.

    Parameters
    level : int, optional
        Logging level to use (default ``logging.INFO``).
    """
    root = logging.getLogger()
    if not root.handlers:                # only configure once
        logging.basicConfig(
            level=level,
            format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    logger.setLevel(level)

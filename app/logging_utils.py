"""Event-style logging helper shared by the sync services."""

from __future__ import annotations

import logging
from typing import Any


def structured_log(
    logger: logging.Logger,
    level: str,
    event: str,
    /,
    **fields: Any,
) -> None:
    """Log ``event`` as the message with ``fields`` attached as record extras.

    The formatters read the event name from the message, so it is not repeated
    in the extras. Metric keys are stripped; run counts live in ``worker_runs``.

        structured_log(logger, "info", "sync.page_fetched", state_id="catalog", items=100)
    """
    fields.pop("metric_name", None)
    fields.pop("metric_value", None)

    log_method = getattr(logger, level.lower())
    log_method(event, extra=fields)

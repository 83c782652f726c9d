from __future__ import annotations

import logging
from typing import Callable

from app.core.config import LOG_LEVEL

_CONFIGURED = False


def configure_logging(level: str | None = None) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    _CONFIGURED = True


def component_logger(component: str) -> Callable[..., None]:
    """
    Returns a `_log(*args, level=logging.INFO)` helper for one component.

    Arguments are joined with spaces, e.g.
      _log("order not found; ignoring", order_id, level=logging.WARNING)
    logs "[payment_webhook] order not found; ignoring 42".
    """
    logger = logging.getLogger(f"marketplace.{component}")

    def _log(*args, level: int = logging.INFO) -> None:
        if not logger.isEnabledFor(level):
            return
        logger.log(level, "[%s] %s", component, " ".join(str(a) for a in args))

    return _log

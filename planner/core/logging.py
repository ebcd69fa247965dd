"""
Process-wide logging setup.
Modules only call logging.getLogger(__name__); this configures the handlers once.
"""

import logging
import sys
from typing import Optional

from planner.core.config import settings


_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    _configured = True

"""NTM logging configuration.

NTM uses the shared InstruktAI logging standard (`instrukt_ai_logging`).
Logs are written to the canonical location for the `ntm` app name; the
dashboard never prints log lines into the terminal it is drawing on.
Example log query: `instruktai-python-logs ntm --since 10m`.
"""

from __future__ import annotations

import os
from typing import Optional

from instrukt_ai_logging import configure_logging


def setup_logging(level: Optional[str] = None) -> None:
    """Configure NTM logging.

    Args:
        level: Optional override for `NTM_LOG_LEVEL`.
    """
    if level:
        os.environ["NTM_LOG_LEVEL"] = level.upper()

    configure_logging("ntm")

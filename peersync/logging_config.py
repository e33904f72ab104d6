from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for a peersync process.

    Targets console logs; an embedding application that installs its own
    handlers first keeps them and only gets the level applied.
    """

    effective_level = (level or os.environ.get("PEERSYNC_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    # aiortc/aioice are chatty at DEBUG; keep them one notch quieter.
    if effective_level == "DEBUG":
        for name in ("aioice", "aiortc"):
            logging.getLogger(name).setLevel(logging.INFO)

from __future__ import annotations

import logging

LOGGER = logging.getLogger("rundk")
LOGGER.addHandler(logging.NullHandler())

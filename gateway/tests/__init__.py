"""Test package for chat gateway unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)

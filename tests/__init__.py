"""Test package for chat sync unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)

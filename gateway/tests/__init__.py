"""Unit and HTTP integration tests for the messaging gateway."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
logging.getLogger("msg_gateway").setLevel(logging.WARNING)

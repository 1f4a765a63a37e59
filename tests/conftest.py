import logging

import pytest


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers installed by setup_logging() so they do not leak between tests."""
    yield
    logger = logging.getLogger("socks5relay")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)

import logging
from collections.abc import Iterator

import pytest

from featurerun.logs import LOGGER_NAME


@pytest.fixture(autouse=True)
def reset_featurerun_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)

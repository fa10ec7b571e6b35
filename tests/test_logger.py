import logging

from mail_queue.logger import ROOT_LOGGER_NAME, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count
    assert logger.name == f"{ROOT_LOGGER_NAME}.TestLogger"


def test_root_logger_is_service_namespace():
    assert get_logger() is logging.getLogger(ROOT_LOGGER_NAME)
    assert get_logger("processor").parent is get_logger()

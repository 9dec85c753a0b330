import logging
import logging.handlers

import pytest

from logger_config import setup_logger


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_console_only(restore_root_logger):
    logger = setup_logger(log_level="debug")
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.StreamHandler)


def test_rotating_file(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "clock.log"
    logger = setup_logger(log_level="INFO", log_file=str(log_file), max_bytes=1024, backup_count=2)
    file_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
    assert len(file_handlers) == 1
    assert file_handlers[0].maxBytes == 1024
    logging.getLogger("time_sync").info("NTP 同步成功")
    file_handlers[0].flush()
    assert "NTP 同步成功" in log_file.read_text(encoding="utf-8")


def test_unknown_level_falls_back_to_info(restore_root_logger):
    assert setup_logger(log_level="LOUD").level == logging.INFO

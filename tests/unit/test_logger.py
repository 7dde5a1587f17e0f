"""
Tests for logging setup
"""

import logging
from logging.handlers import RotatingFileHandler

import pytest
from rich.logging import RichHandler

from yieldkeeper.utils.logger import setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger('yieldkeeper.test_logger').setLevel(logging.NOTSET)


def test_writes_rotating_file(tmp_path, restore_logging):
    log_file = tmp_path / "nested" / "yieldkeeper.log"

    setup_logging(log_file=str(log_file), log_level='INFO', console=False)
    logging.getLogger('yieldkeeper.test_logger').warning("vault rebalanced")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = log_file.read_text(encoding='utf-8')
    assert "MainProcess - yieldkeeper.test_logger - WARNING - vault rebalanced" in content


def test_handlers_replaced_on_second_call(tmp_path, restore_logging):
    log_file = str(tmp_path / "yieldkeeper.log")

    setup_logging(log_file=log_file)
    root = setup_logging(log_file=log_file)

    assert [type(h) for h in root.handlers] == [RotatingFileHandler, RichHandler]


def test_level_and_module_overrides(tmp_path, restore_logging):
    root = setup_logging(
        log_file=str(tmp_path / "yieldkeeper.log"),
        log_level='warning',
        module_levels={'yieldkeeper.test_logger': 'DEBUG'},
        console=False,
    )

    assert root.handlers[0].level == logging.WARNING
    assert logging.getLogger('yieldkeeper.test_logger').level == logging.DEBUG
    assert logging.getLogger('websockets').level == logging.WARNING

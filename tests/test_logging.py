import logging
from logging.handlers import RotatingFileHandler

import pytest

from device_agent.logging import NETWORK_LOGGERS, configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)


def test_file_handler_rotates(tmp_path):
    log_path = tmp_path / "logs" / "agent.log"

    configure_logging("debug", log_path=log_path, max_bytes=65536, backup_count=2)
    logging.getLogger("device_agent.test").debug("hello from the agent")

    rotating = [
        handler
        for handler in logging.getLogger().handlers
        if isinstance(handler, RotatingFileHandler)
    ]
    assert len(rotating) == 1
    assert rotating[0].maxBytes == 65536
    assert rotating[0].backupCount == 2
    rotating[0].flush()
    assert "hello from the agent" in log_path.read_text(encoding="utf-8")
    assert logging.getLogger().level == logging.DEBUG


def test_paho_chatter_quiet_unless_network_logging():
    paho = logging.getLogger("device_agent.adapters.mqtt.paho")

    configure_logging("DEBUG")
    assert paho.getEffectiveLevel() == logging.WARNING
    assert logging.getLogger("device_agent.adapters.mqtt").getEffectiveLevel() == logging.DEBUG

    configure_logging("DEBUG", log_network=True)
    assert paho.getEffectiveLevel() == logging.DEBUG

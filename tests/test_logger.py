"""Log handlers and the per-gauntlet message prefix"""

import logging

from ladder.config import Config
from ladder.utils.logger import ALERT_LOG_NAME, gauntlet_logger, setup_logger


def close_handlers(logger):
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def test_critical_records_reach_alert_file(monkeypatch, tmp_path):
    monkeypatch.setattr(Config, 'LOG_DIR', str(tmp_path))
    logger = setup_logger('ladder.tests.alerts')
    try:
        gauntlet_logger(logger, 7).info("Recorded match 3")
        gauntlet_logger(logger, 7).critical("ALERT: ladder invariants violated, rolling back: gap at 2")
    finally:
        close_handlers(logger)

    alerts = (tmp_path / ALERT_LOG_NAME).read_text(encoding='utf-8')
    assert "[gauntlet 7] ALERT: ladder invariants violated" in alerts
    assert "CRITICAL" in alerts
    assert "Recorded match 3" not in alerts

    daily_logs = [path for path in tmp_path.glob('gauntlet_ladder_*.log') if path.name != ALERT_LOG_NAME]
    assert len(daily_logs) == 1
    daily = daily_logs[0].read_text(encoding='utf-8')
    assert "[gauntlet 7] Recorded match 3" in daily
    assert "[gauntlet 7] ALERT" in daily


def test_setup_logger_is_idempotent(monkeypatch, tmp_path):
    monkeypatch.setattr(Config, 'LOG_DIR', str(tmp_path))
    logger = setup_logger('ladder.tests.idempotent')
    try:
        assert setup_logger('ladder.tests.idempotent') is logger
        assert len(logger.handlers) == 3
        assert [h.level for h in logger.handlers if isinstance(h, logging.FileHandler)] == [
            logging.DEBUG, logging.CRITICAL
        ]
    finally:
        close_handlers(logger)


def test_gauntlet_logger_prefixes_messages():
    adapter = gauntlet_logger(logging.getLogger('ladder.tests.prefix'), 12)
    assert adapter.process("took 0.010s", {}) == ("[gauntlet 12] took 0.010s", {})

import logging
import sys
from datetime import datetime
from pathlib import Path

from ladder.config import Config

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
ALERT_LOG_NAME = 'gauntlet_ladder_alerts.log'


class GauntletLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the gauntlet they concern"""

    def process(self, msg, kwargs):
        return f"[gauntlet {self.extra['gauntlet_id']}] {msg}", kwargs


def gauntlet_logger(logger: logging.Logger, gauntlet_id: int) -> GauntletLogAdapter:
    return GauntletLogAdapter(logger, {'gauntlet_id': gauntlet_id})


def setup_logger(name: str) -> logging.Logger:
    """
    Setup a logger with consistent formatting.

    Besides the console and the daily log file, CRITICAL records (ladder
    invariant violations) also go to a separate alerts file that operators
    can watch on its own.
    """

    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    log_level = logging.DEBUG if Config.DEBUG else logging.INFO
    logger.setLevel(log_level)

    formatter = logging.Formatter(FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_dir = Path(Config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(
        log_dir / f'gauntlet_ladder_{datetime.now().strftime("%Y%m%d")}.log',
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    # Alert path: appended across days, never rotated here
    alert_handler = logging.FileHandler(log_dir / ALERT_LOG_NAME, encoding='utf-8')
    alert_handler.setLevel(logging.CRITICAL)
    alert_handler.setFormatter(formatter)
    logger.addHandler(alert_handler)

    return logger

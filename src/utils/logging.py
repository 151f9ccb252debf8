import os
import sys
from typing import Optional

from loguru import logger

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(__file__)))

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "INFO", file_name: str = "poller.log", to_file: bool = True,
                  log_dir: Optional[str] = None):
    """
    Configure loguru sinks for the poller.

    - stdout at `level` (container / systemd journal)
    - `<log_dir>/<file_name>` rotated at 10 MB, 7 gz archives kept

    Args:
        level: minimum level for both sinks
        file_name: log file name inside log_dir
        to_file: disable the file sink (tests, one-shot CLI runs)
        log_dir: defaults to `logs/` at the project root
    """
    logger.remove()
    logger.add(sys.stdout, level=level, format=CONSOLE_FORMAT, backtrace=False, diagnose=False)

    if not to_file:
        return logger

    log_dir = log_dir or os.path.join(PROJECT_ROOT, "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, file_name)

    logger.add(
        log_file,
        level=level,
        rotation="10 MB",
        retention=7,
        compression="gz",
        backtrace=True,
        diagnose=True,
        enqueue=True,
    )
    logger.info(f"Logging to stdout and {log_file} (level {level})")
    return logger

"""
日志工具模块
控制台输出 INFO 及以上级别，文件按天、按级别分别写入 runtime/logs
"""
import logging
import os
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

# 日志目录，可通过 LOG_DIR 覆盖
LOG_DIR = Path(os.getenv("LOG_DIR", Path(__file__).parent.parent.parent / "runtime" / "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)

CONSOLE_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] [%(filename)s:%(lineno)d] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 文件名中的级别 -> (最低级别, 最高级别)
FILE_LEVELS = {
    "debug": (logging.DEBUG, logging.DEBUG),
    "info": (logging.INFO, logging.WARNING),
    "error": (logging.ERROR, logging.CRITICAL),
}

_loggers = {}


class LevelRangeFilter(logging.Filter):
    """只放行 [low, high] 区间内的日志记录"""

    def __init__(self, low: int, high: int):
        super().__init__()
        self.low = low
        self.high = high

    def filter(self, record: logging.LogRecord) -> bool:
        return self.low <= record.levelno <= self.high


class DailyLevelFileHandler(TimedRotatingFileHandler):
    """
    每天午夜切换文件，文件名：YYYYMMDD_<level>.log
    """

    def __init__(self, log_dir, level_name, backup_count=30):
        self.log_dir = Path(log_dir)
        self.level_name = level_name
        super().__init__(
            filename=str(self._current_filename()),
            when="midnight",
            interval=1,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )

    def _current_filename(self):
        return self.log_dir / f"{datetime.now().strftime('%Y%m%d')}_{self.level_name}.log"

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None
        self.baseFilename = str(self._current_filename())
        self.rolloverAt = self.computeRollover(int(datetime.now().timestamp()))


def setup_logger(name: str = "mailassist", level: int = logging.DEBUG) -> logging.Logger:
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, CONSOLE_LEVEL, logging.INFO))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    for level_name, (low, high) in FILE_LEVELS.items():
        file_handler = DailyLevelFileHandler(LOG_DIR, level_name)
        file_handler.setLevel(low)
        file_handler.addFilter(LevelRangeFilter(low, high))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    _loggers[name] = logger
    return logger


def get_logger(name: str = "mailassist") -> logging.Logger:
    """获取（必要时创建）指定名称的logger"""
    return _loggers.get(name) or setup_logger(name)


logger = get_logger()

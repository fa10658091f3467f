from loguru import logger
import logging
import sys

# LogRecord 內建屬性；其餘的就是呼叫端用 extra={...} 帶進來的欄位
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}

_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level}</level> | {message}"


def _format(record) -> str:
    if record["extra"]:
        return _FORMAT + " | {extra}\n{exception}"
    return _FORMAT + "\n{exception}"


class InterceptHandler(logging.Handler):
    # 套件內模組用 logging.getLogger(__name__)，統一轉送到 loguru
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        extra = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        logger.bind(**extra).opt(depth=6, exception=record.exc_info).log(level, record.getMessage())

def setup_logging(level: str = "INFO"):
    logger.remove()
    logger.add(sys.stdout, level=level,
               backtrace=True, diagnose=False,
               format=_format)
    package_logger = logging.getLogger("marketplace_client")
    package_logger.handlers = [InterceptHandler()]
    package_logger.setLevel(level)
    # 已轉給 loguru，不再往 root 傳，避免重複輸出
    package_logger.propagate = False
    return logger

import logging

from txretry.core.interfaces.logging import LoggingPort
from txretry.core.logging_config import coerce_level


class LoggingAdapter(LoggingPort):
    """LoggingPort backed by a named stdlib logger.

    Handlers are left to `configure_logging`; records propagate to the root
    sinks, which add the execution id.
    """

    def __init__(self, name: str = "txretry", log_level: int | str = logging.INFO):
        self._logger = logging.getLogger(name)
        self._logger.setLevel(coerce_level(log_level))
        self._logger.propagate = True

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, msg: str, *args):
        self._logger.debug(msg, *args)

    def info(self, msg: str, *args):
        self._logger.info(msg, *args)

    def warning(self, msg: str, *args):
        self._logger.warning(msg, *args)

    def error(self, msg: str, *args):
        self._logger.error(msg, *args)

    def exception(self, msg: str, *args):
        self._logger.exception(msg, *args)

from abc import ABC, abstractmethod


class LoggingPort(ABC):
    """Minimal logger used by the composition root and settings.

    Messages use %-style lazy arguments like the stdlib logger.
    """

    @abstractmethod
    def debug(self, msg: str, *args):
        pass

    @abstractmethod
    def info(self, msg: str, *args):
        pass

    @abstractmethod
    def warning(self, msg: str, *args):
        pass

    @abstractmethod
    def error(self, msg: str, *args):
        pass

    @abstractmethod
    def exception(self, msg: str, *args):
        """Log at ERROR level with the active exception's traceback."""

"""
Logging for the metagrowth package.

Every module logs through ``get_logger(__name__)``; records land under the
``metagrowth`` logger hierarchy. The package attaches one console handler to
that root the first time a logger is requested. A fit configuration can
raise or lower the level and add a log file (see
:func:`configure_logging`).

Helpers:
- :func:`log_calls` traces entry, exit and exceptions of a function
- :func:`log_performance` reports functions slower than a threshold
- :func:`log_operation` wraps a block (a whole fit, an export) with
  start/completion/failure records
"""

import functools
import inspect
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER_NAME = "metagrowth"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _as_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


class LoggingManager:
    """Process-wide owner of the ``metagrowth`` root logger."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._console_handler = None
            cls._instance._file_handler = None
        return cls._instance

    @property
    def root(self) -> logging.Logger:
        return logging.getLogger(ROOT_LOGGER_NAME)

    def ensure_console(self) -> None:
        """Attach the console handler once, unless the application already did."""
        if self._console_handler is not None or self.root.handlers:
            return
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self.root.addHandler(handler)
        if self.root.level == logging.NOTSET:
            self.root.setLevel(logging.INFO)
        self._console_handler = handler

    def set_level(self, level: Union[str, int]) -> None:
        self.root.setLevel(_as_level(level))

    def set_log_file(self, path: Union[str, Path, None]) -> None:
        """Send records to ``path`` as well; ``None`` closes the current file."""
        if self._file_handler is not None:
            self.root.removeHandler(self._file_handler)
            self._file_handler.close()
            self._file_handler = None
        if path is None:
            return
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self.root.addHandler(handler)
        self._file_handler = handler

    @staticmethod
    def qualified_name(name: str) -> str:
        if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
            return name
        if name == "__main__":
            return f"{ROOT_LOGGER_NAME}.main"
        return f"{ROOT_LOGGER_NAME}.{name}"


_manager = LoggingManager()


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Logger under the ``metagrowth`` hierarchy.

    Args:
        name: Module name; the caller's ``__name__`` when omitted.
    """
    if name is None:
        frame = inspect.currentframe()
        try:
            caller = frame.f_back if frame is not None else None
            name = caller.f_globals.get("__name__", "unknown") if caller else "unknown"
        finally:
            del frame
    _manager.ensure_console()
    return logging.getLogger(_manager.qualified_name(name))


def set_log_level(level: Union[str, int]) -> None:
    """Set the level of every metagrowth logger (e.g. ``"DEBUG"``)."""
    _manager.set_level(level)


def configure_logging(
    level: Union[str, int] = "INFO", log_file: Union[str, Path, None] = None
) -> logging.Logger:
    """Apply a logging section of a fit configuration.

    Args:
        level: Level of the ``metagrowth`` root logger.
        log_file: Optional file receiving the same records as the console.

    Returns:
        The ``metagrowth`` root logger.
    """
    _manager.ensure_console()
    _manager.set_level(level)
    _manager.set_log_file(log_file)
    return _manager.root


def _callable_name(func) -> str:
    return f"{func.__module__}.{func.__qualname__}"


def log_calls(
    logger: Optional[logging.Logger] = None,
    level: int = logging.DEBUG,
    include_args: bool = False,
):
    """
    Decorator tracing calls of a function.

    Exceptions are logged at ERROR and re-raised unchanged.
    """

    def decorator(func):
        log = logger or get_logger(func.__module__)
        name = _callable_name(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if include_args:
                shown = [repr(a) for a in args] + [f"{k}={v!r}" for k, v in kwargs.items()]
                log.log(level, f"Calling {name}({', '.join(shown)})")
            else:
                log.log(level, f"Calling {name}")
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                log.error(f"Exception in {name}: {e}")
                raise
            log.log(level, f"Completed {name}")
            return result

        return wrapper

    return decorator


def log_performance(
    logger: Optional[logging.Logger] = None,
    level: int = logging.INFO,
    threshold: float = 0.1,
):
    """
    Decorator reporting the wall time of calls lasting at least
    ``threshold`` seconds.
    """

    def decorator(func):
        log = logger or get_logger(func.__module__)
        name = _callable_name(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                log.error(f"Performance: {name} failed after {time.perf_counter() - start:.3f}s: {e}")
                raise
            duration = time.perf_counter() - start
            if duration >= threshold:
                log.log(level, f"Performance: {name} completed in {duration:.3f}s")
            return result

        return wrapper

    return decorator


@contextmanager
def log_operation(
    operation_name: str,
    logger: Optional[logging.Logger] = None,
    level: int = logging.INFO,
):
    """
    Context manager logging the start, duration and outcome of a block.

    Yields the logger so the block can add its own records.
    """
    log = logger or get_logger()
    log.log(level, f"Starting operation: {operation_name}")
    start = time.perf_counter()
    try:
        yield log
    except Exception as e:
        log.error(
            f"Failed operation: {operation_name} after {time.perf_counter() - start:.3f}s: {e}"
        )
        raise
    log.log(level, f"Completed operation: {operation_name} in {time.perf_counter() - start:.3f}s")

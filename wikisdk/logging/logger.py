"""
Hierarchical structured logger with automatic name detection.

Features:
- Auto-detects logger hierarchy from call stack (computed once, cached)
- Optional rotating log file per top-level app (wiki.log, bus.log, ...)
- Structured field logging: log.info("Message", key=value)

Usage:
    from wikisdk.logging import getLogger

    class StoreEngine:
        def __init__(self):
            self.log = getLogger()  # Auto: 'wiki.core.storeEngine.StoreEngine'

        async def start(self):
            self.log.info("[StoreEngine] Ready", poolSize=30)

    log = getLogger()  # Module-level: 'wiki.main'
"""

# Imports
import inspect, logging, logging.handlers, socket
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone as tz


# Global state
_hostname = socket.gethostname()
_configured = False
_fileHandlers = {}  # logPath -> handler
_config = {
    'logDir': None,             # None = console only
    'maxBytes': 10_000_000,
    'backupCount': 5,
    'console': True,
    'level': logging.INFO,
    'utc': False
}


def configureLogging(logDir: Optional[str] = None, maxBytes: int = 10_000_000,
                     backupCount: int = 5, console: bool = True,
                     level: str = 'INFO', utc: bool = False):
    """
    Configure global logging settings (call once at app startup).

    Args:
        logDir: Directory for log files (None disables file output)
        maxBytes: Maximum size per log file before rotation (default: 10MB)
        backupCount: Number of backup files to keep per app (default: 5)
        console: Also log to console (default: True)
        level: Minimum log level (default: 'INFO')
        utc: Use UTC timestamps (default: False, uses local time)
    """
    global _configured

    levelNo = getattr(logging, str(level).upper(), None)
    if not isinstance(levelNo, int):
        raise ValueError(f"Unknown log level: {level}")

    _config.update({'logDir': logDir, 'maxBytes': maxBytes, 'backupCount': backupCount,
                    'console': console, 'level': levelNo, 'utc': utc})

    if logDir:
        Path(logDir).mkdir(parents=True, exist_ok=True)

    # Loggers handed out before configuration pick up the new level
    for logger in logging.Logger.manager.loggerDict.values():
        if isinstance(logger, logging.Logger) and getattr(logger, '_configured_by_sdk', False):
            logger.setLevel(levelNo)
            for handler in logger.handlers:
                handler.setLevel(levelNo)

    _configured = True


def _autoDetectName() -> str:
    """Walk the call stack to the first frame outside this package.
    Returns hierarchy like: 'wiki.server.bridge.EventBusBridge'"""

    frame = inspect.currentframe()
    try:
        current = frame
        while current is not None:
            current = current.f_back
            if current is None:
                break

            module = inspect.getmodule(current)
            if module is None:
                continue

            moduleName = module.__name__

            if moduleName.startswith('wikisdk.logging'):
                continue
            if moduleName.startswith('importlib') or moduleName == '__main__':
                continue

            parts = moduleName.split('.')

            # 'wikisdk' is only a package wrapper
            if parts and parts[0] == 'wikisdk':
                parts = parts[1:]

            className = None
            if current.f_locals:
                if 'self' in current.f_locals:
                    className = current.f_locals['self'].__class__.__name__
                elif 'cls' in current.f_locals:
                    className = current.f_locals['cls'].__name__

            hierarchy = '.'.join(parts) if parts else 'unknown'
            if className:
                hierarchy = f"{hierarchy}.{className}"

            return hierarchy if hierarchy else 'unknown'

        return 'unknown'
    finally:
        del frame


class StructuredFormatter(logging.Formatter):
    """Formatter that includes hostname and structured fields.
    Format: timestamp - hostname - logger.name - level - message [field1=value1, field2=value2]"""

    _excluded = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName',
        'levelname', 'levelno', 'lineno', 'module', 'msecs',
        'message', 'pathname', 'process', 'processName',
        'relativeCreated', 'thread', 'threadName', 'exc_info',
        'exc_text', 'stack_info', 'hostname', 'asctime', 'taskName'
    }

    def __init__(self, fmt=None, datefmt=None, utc=False):
        super().__init__(fmt, datefmt)
        self.utc = utc

    def formatTime(self, record, datefmt=None):
        if self.utc:
            ct = datetime.fromtimestamp(record.created, tz=tz.utc)
        else:
            ct = datetime.fromtimestamp(record.created)

        if datefmt:
            return ct.strftime(datefmt)
        return f"{ct.strftime('%Y-%m-%d %H:%M:%S')},{int(record.msecs):03d}"

    def format(self, record):
        record.hostname = _hostname

        structuredFields = [f"{key}={value}" for key, value in record.__dict__.items()
                            if key not in self._excluded and not key.startswith('_')]

        # Work on a copy of msg so other handlers see the original
        originalMsg = record.msg
        if structuredFields:
            record.msg = f"{originalMsg} [{', '.join(structuredFields)}]"
        try:
            return super().format(record)
        finally:
            record.msg = originalMsg


def getLogger(name: Optional[str] = None, separateFile: bool = False) -> logging.Logger:
    """
    Get or create a logger with automatic hierarchy detection.

    Stack inspection happens once per getLogger() call; keep the returned
    logger on the instance or module.

    Args:
        name: Logger name (auto-detected from call stack if None)
        separateFile: If True, log to '{name}.log' instead of the app log

    Returns:
        logging.Logger whose debug/info/warning/error/critical accept
        structured fields as keyword arguments
    """
    if not _configured:
        configureLogging()

    if name is None:
        name = _autoDetectName()

    logger = logging.getLogger(name)
    logger.propagate = False

    if not logger.handlers and not hasattr(logger, '_configured_by_sdk'):
        logger.setLevel(_config['level'])

        if _config['logDir']:
            # Top-level app name ('wiki' from 'wiki.core.storeEngine') unless separate
            logFilename = f"{name}.log" if separateFile else f"{name.split('.')[0]}.log"
            logPath = str(Path(_config['logDir']) / logFilename)

            if logPath not in _fileHandlers:
                fileHandler = logging.handlers.RotatingFileHandler(
                    logPath,
                    maxBytes=_config['maxBytes'],
                    backupCount=_config['backupCount'],
                    encoding='utf-8'
                )
                fileHandler.setLevel(_config['level'])
                fileHandler.setFormatter(StructuredFormatter(
                    '%(asctime)s - %(hostname)s - %(name)s - %(levelname)s - %(message)s',
                    utc=_config['utc']
                ))
                _fileHandlers[logPath] = fileHandler

            logger.addHandler(_fileHandlers[logPath])

        if _config['console']:
            consoleHandler = logging.StreamHandler()
            consoleHandler.setLevel(_config['level'])
            consoleHandler.setFormatter(StructuredFormatter(
                '%(name)s - %(levelname)s - %(message)s',
                utc=_config['utc']
            ))
            logger.addHandler(consoleHandler)

        logger._configured_by_sdk = True

    return _wrapLogger(logger)


def _wrapLogger(logger: logging.Logger) -> logging.Logger:
    """
    Replace the level methods so structured fields can be passed as **kwargs.

    log.info("Message", field1=value1) instead of
    log.info("Message", extra={'field1': value1})
    """
    if hasattr(logger, '_is_wrapped'):
        return logger

    def wrap(original):
        def method(msg, *args, **kwargs):
            # exc_info/stack_info are reserved logging params, not fields
            excInfo = kwargs.pop('exc_info', False)
            stackInfo = kwargs.pop('stack_info', False)
            if kwargs:
                original(msg, *args, extra=kwargs, exc_info=excInfo, stack_info=stackInfo)
            else:
                original(msg, *args, exc_info=excInfo, stack_info=stackInfo)
        method.__doc__ = original.__doc__
        return method

    logger.debug = wrap(logger.debug)
    logger.info = wrap(logger.info)
    logger.warning = wrap(logger.warning)
    logger.error = wrap(logger.error)
    logger.critical = wrap(logger.critical)
    logger._is_wrapped = True

    return logger

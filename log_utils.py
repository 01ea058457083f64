import logging
from logging.handlers import RotatingFileHandler
import os

_REPO_ROOT = os.path.dirname(os.path.abspath(__file__))

# The service may run from a read-only checkout, so the log location can be
# redirected with ``SIGNALIX_LOG_FILE``.
LOG_FILE = os.getenv("SIGNALIX_LOG_FILE", os.path.join(_REPO_ROOT, "logs", "signalix.log"))

_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _build_file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    try:
        directory = os.path.dirname(LOG_FILE)
        if directory:
            os.makedirs(directory, exist_ok=True)
        # Rotating file handler keeps last 5 logs of ~1MB each
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5)
    except OSError:
        return None
    handler.setFormatter(formatter)
    return handler


def setup_logger(name: str) -> logging.Logger:
    """Configure and return a module-level logger.

    Logs are written to both console and a rotating file to persist
    information for debugging. Subsequent calls with the same name
    return the already configured logger.  When the log directory is not
    writable only the console handler is attached.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(_FORMAT)
    file_handler = _build_file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return logger


def read_logs(tail: int = 100) -> str:
    """Return the last ``tail`` lines from the log file.

    Parameters
    ----------
    tail : int, optional
        The number of lines from the end of the log to return. Defaults
        to 100.  Non-positive values return the whole file.

    Returns
    -------
    str
        The concatenated log lines, or an empty string when no log file
        has been written yet.
    """
    if not os.path.exists(LOG_FILE):
        return ""
    with open(LOG_FILE, "r") as f:
        lines = f.readlines()
    if tail <= 0:
        return "".join(lines)
    return "".join(lines[-tail:])

# utils.py
import os
import time
import logging
import functools
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s\t%(name)-12s\t%(levelname)-8s\t%(message)s"


def setup_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    """
    Console gets INFO (DEBUG with verbose), the log file always gets
    everything including raw tool output.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if log_file:
        ensure_dir(Path(log_file).parent)
        fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(fh)


def ensure_dir(path) -> Path:
    """Create directory if not exists and return the path."""
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def remove_quietly(path) -> bool:
    """
    Best-effort removal of a temporary file. Failures are logged, never raised.
    """
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error("Could not delete file %s (%s)", path, e)
        return False


def format_elapsed(seconds: float) -> str:
    minutes, sec = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    if hours:
        return f"{hours}h {minutes}m {sec:.0f}s"
    if minutes:
        return f"{minutes}m {sec:.1f}s"
    return f"{sec:.2f}s"


def timing(func: Callable) -> Callable:
    """
    Decorator to report execution time of a pipeline stage.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        log = logging.getLogger(func.__module__)
        log.debug("Running %s", func.__name__)

        start = time.time()
        result = func(*args, **kwargs)
        end = time.time()

        log.info("%s finished in %s", func.__name__, format_elapsed(end - start))
        return result

    return wrapper

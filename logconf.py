import logging
from logging.handlers import RotatingFileHandler

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "edgedhcp"


def setup_logging(*, level: str = "INFO", quiet: bool = False, log_file: str | None = None):
    log = logging.getLogger(ROOT_LOGGER)
    log.setLevel(level.upper())
    for h in list(log.handlers):
        log.removeHandler(h)

    if quiet:
        log.addHandler(logging.NullHandler())
    else:
        # stderr keeps rich tables on stdout clean
        h = RichHandler(console=Console(stderr=True), show_path=False, markup=False)
        h.setLevel(level.upper())
        h.setFormatter(logging.Formatter("%(message)s"))
        log.addHandler(h)

    if log_file:
        fh = RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
        fh.setLevel(level.upper())
        fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        log.addHandler(fh)

    return log


def get_logger(name: str | None = None):
    if not name or name == "__main__":
        return logging.getLogger(ROOT_LOGGER)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")

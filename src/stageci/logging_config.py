import logging
import sys


class ColoredFormatter(logging.Formatter):
    """Adds level colours to stderr output."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    format_str = "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s"

    FORMATS = {
        logging.DEBUG: cyan + format_str + reset,
        logging.INFO: green + format_str + reset,
        logging.WARNING: yellow + format_str + reset,
        logging.ERROR: red + format_str + reset,
        logging.CRITICAL: bold_red + format_str + reset,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.format_str)
        formatter = logging.Formatter(log_fmt, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def setup_logging(level=logging.WARNING, color=None):
    """
    Route stageci's loggers to stderr.

    Only the "stageci" logger is configured so embedding applications keep
    control of the root logger.
    """
    logger = logging.getLogger("stageci")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.setLevel(level)

    if color is None:
        color = sys.stderr.isatty()

    handler = logging.StreamHandler(sys.stderr)
    if color:
        handler.setFormatter(ColoredFormatter())
    else:
        handler.setFormatter(logging.Formatter(ColoredFormatter.format_str, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger

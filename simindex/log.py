import logging

from simindex import config


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    level = config.log_level()
    if level:
        logging.getLogger("simindex").setLevel(getattr(logging, level, logging.INFO))
    return logger

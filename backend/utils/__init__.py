# Utils package
from .logging_utils import setup_logging, get_logger, LogTimer, log_step

__all__ = ['setup_logging', 'get_logger', 'LogTimer', 'log_step']

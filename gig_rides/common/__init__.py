# gig_rides/common/__init__.py
"""
Общие утилиты, константы и логгер.
"""

from gig_rides.common.logger import get_logger, setup_logging, log_info, log_error, log_warning, log_debug
from gig_rides.common.constants import TypeMsg, EventTopic, TagName

__all__ = [
    "get_logger",
    "setup_logging",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "TypeMsg",
    "EventTopic",
    "TagName",
]

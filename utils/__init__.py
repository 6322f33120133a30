# -*- coding: utf-8 -*-
"""
TRRCMS Utility Module
"""

from .logger import get_logger, setup_logger
from .datetime_utils import utc_now, to_isoformat, parse_datetime

__all__ = [
    "get_logger",
    "setup_logger",
    "utc_now",
    "to_isoformat",
    "parse_datetime",
]

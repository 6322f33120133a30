# -*- coding: utf-8 -*-
"""
TRRCMS Application Core Module
"""

from .config import Config

__all__ = ["Config"]

"""
Storage Layer.

This package handles configuration persistence: the INI file and its
environment overrides.
"""

from .config_manager import ConfigManager

__all__ = ["ConfigManager"]

"""
Storage Layer.

This package handles the INI configuration file.
"""

from .config_manager import ConfigManager

__all__ = ["ConfigManager"]

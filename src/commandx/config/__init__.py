"""Configuration module for CommandX."""

from commandx.config.holidays import is_company_holiday, load_holiday_calendar
from commandx.config.logging import bind_command_context, configure_logging
from commandx.config.settings import FlatSettings, get_settings

__all__ = [
    "FlatSettings",
    "get_settings",
    "configure_logging",
    "bind_command_context",
    "is_company_holiday",
    "load_holiday_calendar",
]

"""Config package exporting loader helpers."""

from .loader import EntriesConfig, NotifierConfig, Settings, load_settings

__all__ = ["EntriesConfig", "NotifierConfig", "Settings", "load_settings"]

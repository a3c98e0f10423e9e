from .log_manager import EventJournal, configure_logging

__all__ = ["EventJournal", "configure_logging"]

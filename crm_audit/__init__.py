"""CRM communication audit backend."""

__version__ = "1.4.0"

"""Loopwork - scheduled, API-polling and file-watching agent loops"""

__version__ = "0.1.0"

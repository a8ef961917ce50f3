"""
Defines the worker's version string.

This is the single source of truth for the version number. It is logged at
startup and used for packaging.
"""

__version__ = "1.3.0"

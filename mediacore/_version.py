"""
Defines the package version string.

This is the single source of truth for the version number. It is reported
by the gateway's `Server` header and used for packaging.
"""

__version__ = "0.4.0"

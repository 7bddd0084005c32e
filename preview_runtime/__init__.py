"""
Preview Runtime - a mechanical execution chamber for assembled applications.
"""

__version__ = "1.0.0"

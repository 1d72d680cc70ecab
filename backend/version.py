"""
Version metadata for h2scan.

Follow semantic versioning: MAJOR.MINOR.PATCH
"""

__all__ = ["__version__"]

__version__ = "1.0.0"

# pkglet/__init__.py
"""pkglet - source package manager resolution engine."""

__version__ = "1.0.0"

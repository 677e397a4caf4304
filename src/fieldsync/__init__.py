"""
Equipment allocation and offline-first sync core.
"""

__version__ = "0.1.0"

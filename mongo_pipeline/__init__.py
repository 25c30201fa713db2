"""
Change-capture pipeline between MongoDB collections and a record stream.
"""

__version__ = "1.0.0"

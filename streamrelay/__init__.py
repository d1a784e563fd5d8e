"""
streamrelay: MongoDB change stream relay with crash-safe resume tokens.
"""

__version__ = "0.1.0"

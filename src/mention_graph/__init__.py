"""
Mention Graph - reference and backlink index for a bookmark/note manager.
This package scans note and bookmark content for embedded mentions (tags,
note-title links, card links, date links and collection links), keeps a
relational index of them per source record, and answers backlink queries.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("mention-graph")
except PackageNotFoundError:
    __version__ = "0.3.0"

"""
mailindex - Index your mail and count what matches.

A file-based email indexer with a search-query count command.
"""

__version__ = "0.1.0"

from mailindex.database import DatabaseMode, IndexDatabase, Query
from mailindex.parser import EmailParser

__all__ = [
    "DatabaseMode",
    "EmailParser",
    "IndexDatabase",
    "Query",
]

"""
Embedding-augmented knowledge store.
Relational records (accounts, channels, messages, documents) paired with
SQLite-resident vector indexes for semantic recall.
"""

from .core.config import VERSION

__version__ = VERSION

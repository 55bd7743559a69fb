"""
Value types passed between the vector index and the knowledge base.
"""

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class EmbeddingRecord:
    """A stored embedding tied to its owning relational row."""

    row_id: int
    """Identifier of the owning relational row"""

    vector: List[float]
    """The decoded embedding (float32 precision, upcast to float)"""

    span: Optional[str] = None
    """The text span that produced this embedding"""


@dataclass
class Neighbor:
    """A nearest-neighbor hit from the vector index."""

    row_id: int
    """Identifier of the owning relational row"""

    distance: float
    """Distance from the query vector (smaller is closer)"""

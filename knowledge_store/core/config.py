"""
Configuration for the knowledge store, read from the environment.
A local .env file is loaded first so development settings stay out of the shell.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/knowledge.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Embedding configuration
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence_transformers|ollama
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
EMBED_TIMEOUT_SEC = float(os.getenv("EMBED_TIMEOUT_SEC", "30"))  # 0 disables

# Vector index configuration
VECTOR_METRIC = os.getenv("VECTOR_METRIC", "l2")  # l2|cosine
DOCUMENT_CHUNK_SIZE = int(os.getenv("DOCUMENT_CHUNK_SIZE", "0"))  # 0 = whole document
SEARCH_DEFAULT_K = int(os.getenv("SEARCH_DEFAULT_K", "5"))

VERSION = "0.1.0"

VALID_PROVIDERS = ["hash", "sentence_transformers", "ollama"]
VALID_METRICS = ["l2", "cosine"]


def get_embedding_provider():
    """Get the configured embedding provider implementation."""
    if EMBED_PROVIDER == "sentence_transformers":
        from ..vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(EMBED_MODEL_NAME)
    elif EMBED_PROVIDER == "ollama":
        from ..vector.embeddings import OllamaEmbedding
        return OllamaEmbedding(EMBED_MODEL_NAME, host=OLLAMA_HOST, dimension=EMBED_DIM)
    else:
        from ..vector.embeddings import DeterministicHashEmbedding
        return DeterministicHashEmbedding(dimension=EMBED_DIM)


def get_embed_timeout():
    """Provider timeout in seconds, or None when disabled."""
    return EMBED_TIMEOUT_SEC if EMBED_TIMEOUT_SEC > 0 else None


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(path: str = None):
    """Ensure the database directory exists."""
    path = path or DB_PATH
    if path == ":memory:":
        return
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if EMBED_PROVIDER not in VALID_PROVIDERS:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if VECTOR_METRIC not in VALID_METRICS:
        issues.append(f"Invalid VECTOR_METRIC: {VECTOR_METRIC}")

    if EMBED_DIM < 1:
        issues.append("EMBED_DIM must be >= 1")

    if DOCUMENT_CHUNK_SIZE < 0:
        issues.append("DOCUMENT_CHUNK_SIZE must be >= 0")

    if SEARCH_DEFAULT_K < 1:
        issues.append("SEARCH_DEFAULT_K must be >= 1")

    if EMBED_TIMEOUT_SEC < 0:
        issues.append("EMBED_TIMEOUT_SEC must be >= 0")

    return issues

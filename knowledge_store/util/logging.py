"""
Structured logging for knowledge store operations.
"""

import logging
from typing import Any, Dict

from ..core.config import debug_enabled


def _truncate(text: str, limit: int = 50) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class StructuredLogger:
    """Structured logger for store, vector and search operations."""

    def __init__(self, name: str = "knowledge_store"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG if debug_enabled() else logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status == "failed":
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_store_operation(self, operation: str, table: str, row_id: Any = None, status: str = "success", details: Dict[str, Any] = None):
        """Log a relational write."""
        log_details = {"table": table}
        if row_id is not None:
            log_details["row_id"] = row_id
        if details:
            log_details.update(details)

        self.log_operation(f"store.{operation}", status, log_details)

    def log_vector_operation(self, operation: str, index: str, row_id: Any = None, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector index operation."""
        log_details = {"index": index}
        if row_id is not None:
            log_details["row_id"] = row_id
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_search(self, kind: str, query: str, k: int, hits: int, skipped: int = 0):
        """Log a semantic search."""
        details = {"query": _truncate(query), "k": k, "hits": hits}
        if skipped:
            details["skipped_stale"] = skipped

        self.log_operation(f"search.{kind}", "success", details)

    def log_provider_failure(self, provider: str, text: str, error: Exception):
        """Log an embedding provider failure."""
        details = {
            "provider": provider,
            "text": _truncate(text),
            "error": _truncate(str(error), 100),
        }
        self.log_operation("embed", "failed", details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()

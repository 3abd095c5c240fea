"""
Utilities package for Production Flow Orchestrator

Contains persistence backends, logging, metrics, signing and other common
functionality.
"""

from .store import ProductionStore
from .database import DatabaseManager
from .memory_store import InMemoryDatabase
from .logger import setup_logger, get_logger, set_log_context, LoggerContext
from .signing import sign_payload, signature_header, verify_signature
from .url_validation import validate_webhook_url

__all__ = [
    "ProductionStore",
    "DatabaseManager",
    "InMemoryDatabase",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "LoggerContext",
    "sign_payload",
    "signature_header",
    "verify_signature",
    "validate_webhook_url"
]

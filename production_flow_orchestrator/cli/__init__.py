"""
CLI package for Production Flow Orchestrator

Provides command-line interface for step catalogues, webhooks, rules and units.
"""

from .main import main, cli

__all__ = ["main", "cli"]
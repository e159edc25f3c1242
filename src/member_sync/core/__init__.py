"""Downstream profile store client and retry plumbing used by the CLI."""

from .client import ProfileStoreClient
from .retry import call_with_retry

__all__ = ["ProfileStoreClient", "call_with_retry"]

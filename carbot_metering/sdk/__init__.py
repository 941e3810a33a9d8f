"""
SDK for CarBot metering.

Provides metered wrappers around external API clients.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]

"""
SDK for Token Cost Guard.

Provides metered access to inference backends.
"""

from .openai_client import MeteredCompletion, MeteredLLMClient, OpenAIDispatcher

__all__ = ["MeteredCompletion", "MeteredLLMClient", "OpenAIDispatcher"]

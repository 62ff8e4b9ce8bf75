"""
SDK for Prompt Cost Guard.

Provides the AI invocation gateway used by the engine.
"""

from .openai_client import AIGateway, GatewayResponse, OpenAIGateway, UpstreamFailure

__all__ = ["AIGateway", "GatewayResponse", "OpenAIGateway", "UpstreamFailure"]

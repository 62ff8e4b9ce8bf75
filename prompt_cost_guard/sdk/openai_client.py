"""
OpenAI-backed AI invocation gateway.

Sends rendered prompts to the chat completions API and reports text,
token usage and cost. Failures are surfaced as UpstreamFailure; this
gateway never retries.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from openai import OpenAI, OpenAIError

from ..core.pricing import DEFAULT_MODEL, calculate_cost
from ..core.token_counter import TokenUsage

PROVIDER = "openai"


class UpstreamFailure(Exception):
    """Raised when the AI gateway call fails or returns an unusable response."""
    def __init__(self, message: str, provider: str = PROVIDER, model: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model


@dataclass(frozen=True)
class GatewayResponse:
    """Result of one model invocation."""
    text: str
    usage: TokenUsage
    cost: float
    provider: str
    model: str
    request_id: Optional[str] = None


class AIGateway(Protocol):
    """Anything that can turn a rendered prompt into a model response."""

    def invoke(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> GatewayResponse:
        ...


class OpenAIGateway:
    """AI gateway using the OpenAI chat completions API.

    Each call is a single request/response; errors from the API and
    responses without usage data are raised as UpstreamFailure.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        system_prompt: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        """Initialize the gateway.

        Args:
            model: Default OpenAI model name
            system_prompt: Optional system message sent before every prompt
            client: Preconfigured OpenAI client (a new one is created otherwise)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.system_prompt = system_prompt
        self.client = client if client is not None else OpenAI()

    def invoke(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        **kwargs: Any
    ) -> GatewayResponse:
        """Send a rendered prompt and return the model's answer.

        Args:
            prompt: Rendered prompt text (required)
            model: Model override for this call
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            **kwargs: Additional OpenAI parameters

        Returns:
            GatewayResponse with text, usage and estimated cost

        Raises:
            ValueError: If prompt is empty
            UpstreamFailure: If the API call fails or usage is missing
        """
        if not prompt:
            raise ValueError("prompt is required and cannot be empty")

        model = model or self.model
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except OpenAIError as e:
            raise UpstreamFailure(f"OpenAI request failed: {e}", model=model) from e

        usage = response.usage
        if not usage:
            raise UpstreamFailure("OpenAI response missing usage information", model=model)

        token_usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens
        )
        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""

        return GatewayResponse(
            text=text,
            usage=token_usage,
            cost=calculate_cost(model, token_usage),
            provider=PROVIDER,
            model=model,
            request_id=response.id,
        )

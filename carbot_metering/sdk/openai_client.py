"""
Metered OpenAI client wrapper.

Runs chat completions through the metering gate so every call is capped,
rate limited and counted against the workshop's API call usage.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.engine import MeteringEngine
from ..core.metrics import Metric


class MeteredOpenAI:
    """OpenAI client wrapper that meters each chat call for one workshop.

    Rejections raise ``MeteringRejection`` before OpenAI is called. OpenAI
    errors propagate unchanged; the call is still counted and its slot
    released.
    """

    def __init__(self, tenant_id: str, engine: MeteringEngine, model: str, client: Optional[OpenAI] = None):
        """Initialize metered OpenAI client.

        Args:
            tenant_id: Workshop the calls are billed to (required)
            engine: Metering engine to run calls through
            model: OpenAI model name (required)
            client: Existing OpenAI client (a new one is created if omitted)

        Raises:
            ValueError: If tenant_id or model is missing/empty
        """
        if not tenant_id or not tenant_id.strip():
            raise ValueError("tenant_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.tenant_id = tenant_id
        self.engine = engine
        self.model = model
        self.client = client or OpenAI()
        self.last_request = None

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ):
        """Create a chat completion as a metered API call.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty
            MeteringRejection: If the workshop is over its concurrency or rate limit
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        with self.engine.gate.metered(self.tenant_id, Metric.API_CALLS) as request:
            self.last_request = request
            return self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )

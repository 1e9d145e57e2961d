"""
Marketplace-backed OpenAI client.

Sends a chat completion to whichever provider the marketplace admits, then
reports the usage and settles the stream.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from openai import OpenAI

from ..core.marketplace import Marketplace
from ..core.streams import StreamSummary


class MarketplaceOpenAI:
    """OpenAI-compatible client that runs each call as one metered stream.

    Providers expose OpenAI-compatible endpoints. Transport failures fail the
    stream (crediting nothing beyond reported usage) and are re-raised.
    """

    def __init__(
        self,
        marketplace: Marketplace,
        model: str,
        quality_tier: str = "standard",
        api_key: Optional[str] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        """Initialize the client.

        Args:
            marketplace: Marketplace that admits and meters the streams
            model: Model name requested from providers (required)
            quality_tier: Quality tier used for matching
            api_key: Key sent to provider endpoints
            timer: Monotonic clock in seconds, used for latency

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.marketplace = marketplace
        self.model = model
        self.quality_tier = quality_tier
        self.api_key = api_key or "inference-market"
        self.last_summary: Optional[StreamSummary] = None
        self._timer = timer
        self._clients: Dict[str, OpenAI] = {}

    def chat(
        self,
        messages: List[Dict[str, str]],
        user_id: Optional[str] = None,
        ad_preferences: Optional[dict] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ):
        """Create a chat completion on a marketplace provider.

        When ``user_id`` is given, a sponsored block may be spliced into the
        last user message before it is sent.

        Args:
            messages: List of message dictionaries (required)
            user_id: User to target ads at (optional)
            ad_preferences: Requested ad categories, e.g. {"categories": [...]}
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            The provider's chat completion response, unchanged

        Raises:
            ValueError: If messages is empty, the provider has no endpoint or
                the response carries no usage
            MarketplaceError: If no provider can be admitted
            OpenAI API errors: Propagated after the stream is failed
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        handle = self.marketplace.request_stream(self.model, self.quality_tier)
        provider = self.marketplace.registry.get(handle.provider_id)
        if not provider.endpoint:
            self.marketplace.fail_stream(handle.stream_id, "provider has no endpoint")
            raise ValueError(f"Provider {provider.id} has no endpoint configured")

        # Ads are placed only once a provider has been admitted
        if user_id is not None:
            try:
                messages = self._with_ad(messages, user_id, ad_preferences)
            except Exception as e:
                self.marketplace.fail_stream(handle.stream_id, f"ad injection error: {e}")
                raise

        started = self._timer()
        try:
            response = self._client_for(provider.endpoint).chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except Exception as e:
            self.marketplace.fail_stream(handle.stream_id, f"transport error: {e}")
            raise
        latency_ms = (self._timer() - started) * 1000

        usage = response.usage
        if not usage:
            self.marketplace.fail_stream(handle.stream_id, "response missing usage")
            raise ValueError("Provider response missing usage information")

        try:
            self.marketplace.report_usage(handle.stream_id, usage.total_tokens, latency_ms)
            self.last_summary = self.marketplace.end_stream(handle.provider_id, handle.stream_id)
        except Exception as e:
            self.marketplace.fail_stream(handle.stream_id, f"usage settlement error: {e}")
            raise
        return response

    def _client_for(self, endpoint: str) -> OpenAI:
        client = self._clients.get(endpoint)
        if client is None:
            client = OpenAI(base_url=endpoint, api_key=self.api_key)
            self._clients[endpoint] = client
        return client

    def _with_ad(
        self,
        messages: List[Dict[str, str]],
        user_id: str,
        ad_preferences: Optional[dict],
    ) -> List[Dict[str, str]]:
        messages = [dict(m) for m in messages]
        for message in reversed(messages):
            if message.get("role") == "user":
                message["content"] = self.marketplace.inject_ad(
                    message.get("content", ""), user_id, ad_preferences
                )
                break
        return messages

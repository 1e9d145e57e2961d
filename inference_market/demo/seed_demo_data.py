# inference_market/demo/seed_demo_data.py

from typing import List

from inference_market.core.marketplace import Marketplace
from inference_market.core.registry import Hardware
from inference_market.core.streams import StreamSummary
from inference_market.storage.repository import StreamHistoryRepository

DEMO_PROVIDERS = [
    (Hardware("RTX 4090", 24, 16), ["llama-3-70b", "mistral-7b"], "0.0001"),
    (Hardware("RTX 3070", 8, 8), ["llama-3-70b"], "0.00005"),
    (Hardware("A100", 80, 108), ["llama-3-70b", "claude-3-opus"], "0.0004"),
]


def run_demo(marketplace: Marketplace) -> List[StreamSummary]:
    """Register demo providers and run a few streams, one of which fails."""
    for hardware, models, price in DEMO_PROVIDERS:
        marketplace.register_provider(hardware, models, price)

    summaries = []

    first = marketplace.request_stream("llama-3-70b", "standard")
    second = marketplace.request_stream("llama-3-70b", "high")
    marketplace.report_usage(first.stream_id, 500, 120)
    marketplace.report_usage(first.stream_id, 500, 80)
    marketplace.report_usage(second.stream_id, 1200, 95)
    summaries.append(marketplace.end_stream(first.provider_id, first.stream_id))
    summaries.append(marketplace.end_stream(second.provider_id, second.stream_id))

    third = marketplace.request_stream("mistral-7b", "low")
    marketplace.report_usage(third.stream_id, 300, 40)
    summaries.append(marketplace.fail_stream(third.stream_id, "provider heartbeat lost"))

    placement = marketplace.ad_ledger.place_ad(
        "Help me refactor this code. The software build is slow. Suggest development tools.",
        user_id="demo_user",
    )
    if placement is not None:
        marketplace.record_ad_click(placement.ad.id)
    return summaries


if __name__ == "__main__":
    repository = StreamHistoryRepository()
    repository.initialize()

    demo_marketplace = Marketplace()
    demo_marketplace.coordinator.add_close_listener(repository.record_summary)
    run_demo(demo_marketplace)

    print("Demo streams recorded")

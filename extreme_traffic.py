"""Convenience runner that pushes the wallet API to its rate limits."""

import asyncio
import os

from wallet_load import LoadConfig, RunController, setup_logging


async def main() -> None:
    config = LoadConfig(
        target=os.getenv("WALLET_API_URL", "http://host.docker.internal"),
        scenario="wallet_extreme",
        # No think time: iterations run back to back to maximize load
        think_time=None,
        timeout_seconds=5.0,
        summary_interval=15,
        thresholds={
            "http_req_duration": ["p(95)<2000"],
            "wallet_creation_latency": ["p(95)<2000"],
            "add_coins_latency": ["p(95)<2000"],
            "update_coins_latency": ["p(95)<2000"],
            "wallet_failed_requests": ["rate<0.5"],
            "wallet_rate_limits": ["rate<0.5"],
        },
    )

    setup_logging("INFO")
    controller = RunController(config)
    report = await controller.run()
    print(report.render_text())


if __name__ == "__main__":
    asyncio.run(main())

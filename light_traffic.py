"""Convenience runner that puts light wallet traffic on a local wallet API."""

import asyncio

from wallet_load import LoadConfig, RunController, setup_logging


async def main() -> None:
    config = LoadConfig(
        target="http://localhost:3500",
        scenario="wallet_light",
        think_time=(1.0, 3.0),
        summary_interval=30,
    )

    setup_logging("INFO")
    controller = RunController(config)
    report = await controller.run()
    print(report.render_text())


if __name__ == "__main__":
    asyncio.run(main())

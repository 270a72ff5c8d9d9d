"""
Command-line entry point: serve the relay and capture API with uvicorn.

Host and port come from SIGNALING_HOST / SIGNALING_PORT so the companion
client's default SIGNALING_URL points back at this same process.
"""

from __future__ import annotations

import uvicorn
from dotenv import load_dotenv

from config import AppConfig


def main() -> None:
    load_dotenv()
    config = AppConfig.load_from_env()

    uvicorn.run(
        "server.asgi:app",
        host=config.signaling_host,
        port=config.signaling_port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()

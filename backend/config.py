"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No relay or capture logic
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from spec import SIGNALING_DEFAULT_PORT


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the relay, the capture supervisor and the companion client.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Signaling relay
    # ------------------------------------------------------------------

    signaling_host: str
    signaling_port: int

    # ------------------------------------------------------------------
    # Capture helper
    # ------------------------------------------------------------------

    capture_helper_path: str

    # ------------------------------------------------------------------
    # Companion client
    # ------------------------------------------------------------------

    enable_companion: bool
    signaling_url: str

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if SIGNALING_PORT is not an integer.
        """
        host = os.environ.get("SIGNALING_HOST", "127.0.0.1")
        port = int(os.environ.get("SIGNALING_PORT", str(SIGNALING_DEFAULT_PORT)))

        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            signaling_host=host,
            signaling_port=port,

            capture_helper_path=os.environ.get(
                "CAPTURE_HELPER_PATH", "src/native/AudioStreamer"
            ),

            enable_companion=os.environ.get("ENABLE_COMPANION", "1") == "1",
            signaling_url=os.environ.get("SIGNALING_URL", f"ws://{host}:{port}/ws"),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",
        )

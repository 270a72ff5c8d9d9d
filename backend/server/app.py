"""
FastAPI app factory.

Responsibilities:
- Create and configure the FastAPI app
- Set up middleware
- Build the per-process singletons (relay, capture supervisor, pipeline,
  notification hubs, companion client) and park them on app.state
- Register routes
"""

from __future__ import annotations

import asyncio
import shlex
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from audio.frame_buffer import FrameBuffer
from audio.playback_bridge import AudioPlaybackBridge, SampleBlock
from capture.pipeline import CapturePipeline
from capture.supervisor import CaptureProcessSupervisor
from companion.client import CompanionClient
from config import AppConfig
from observability.logger import configure_logging, log_event, now_ms
from server.notifications import NotificationHub
from server.routes import register_routes
from signaling.relay import SignalingRelay
from signaling.router import CollaboratorNotice
from spec import CAPTURE_STOP_GRACE_S


def create_app(config: AppConfig | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Pass a config to override the environment (tests, embedding).
    """
    if config is None:
        config = AppConfig.load_from_env()

    configure_logging(level=config.log_level, json_output=config.enable_json_logs)

    notifications = NotificationHub()
    blocks = NotificationHub()

    async def publish_block(block: SampleBlock) -> None:
        await blocks.publish(block.to_bytes())

    supervisor = CaptureProcessSupervisor(
        helper_command=shlex.split(config.capture_helper_path),
        buffer=FrameBuffer(),
        on_notification=notifications.publish,
    )
    pipeline = CapturePipeline(
        supervisor=supervisor,
        bridge=AudioPlaybackBridge(sink=publish_block, capture_format=supervisor.capture_format),
    )

    async def on_notice(notice: CollaboratorNotice) -> None:
        await notifications.publish(notice.as_dict())
        if notice.type == "stop-recording" and relay.router.active_session_count() == 0:
            await pipeline.stop()

    relay = SignalingRelay(on_notice=on_notice)

    companion = CompanionClient(
        config.signaling_url,
        pipeline=pipeline,
        on_message=notifications.publish,
    ) if config.enable_companion else None

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        companion_task: asyncio.Task[None] | None = None
        if companion is not None:
            companion_task = asyncio.create_task(companion.run())
        log_event({
            "ts_ms": now_ms(),
            "event_type": "APP_STARTED",
            "env": config.env,
            "companion": companion is not None,
        })
        try:
            yield
        finally:
            if companion is not None and companion_task is not None:
                await companion.close()
                done, _ = await asyncio.wait({companion_task}, timeout=CAPTURE_STOP_GRACE_S)
                if not done:
                    companion_task.cancel()
                    await asyncio.wait({companion_task})
            await pipeline.shutdown()
            log_event({"ts_ms": now_ms(), "event_type": "APP_STOPPED"})

    app = FastAPI(title="System Audio Companion", lifespan=lifespan)

    app.state.config = config
    app.state.relay = relay
    app.state.supervisor = supervisor
    app.state.pipeline = pipeline
    app.state.notifications = notifications
    app.state.blocks = blocks
    app.state.companion = companion

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)

    return app

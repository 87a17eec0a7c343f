"""Channel manager for coordinating chat channels."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from relaybot.bus.events import OutboundMessage
from relaybot.bus.queue import MessageBus
from relaybot.channels.base import BaseChannel
from relaybot.config.schema import Config


class ChannelManager:
    """
    Manages chat channels and coordinates message routing.

    Responsibilities:
    - Initialize enabled channels
    - Start/stop channels
    - Route outbound messages, serially per channel
    """

    def __init__(self, config: Config, bus: MessageBus, channels: dict[str, BaseChannel] | None = None):
        self.config = config
        self.bus = bus
        self.channels: dict[str, BaseChannel] = dict(channels or {})
        self._dispatch_task: asyncio.Task | None = None
        self._outbound_queues: dict[str, asyncio.Queue[OutboundMessage]] = {}
        self._outbound_workers: dict[str, asyncio.Task[None]] = {}

        if channels is None:
            self._init_channels()

    def _init_channels(self) -> None:
        """Initialize channels based on config."""
        if self.config.channels.telegram.enabled:
            try:
                from relaybot.channels.telegram import TelegramChannel
                self.channels["telegram"] = TelegramChannel(self.config.channels.telegram, self.bus)
                logger.info("Telegram channel enabled")
            except ImportError as e:
                logger.warning(f"Telegram channel not available: {e}")

    async def _start_channel(self, name: str, channel: BaseChannel) -> None:
        """Start a channel and log any exceptions."""
        try:
            await channel.start()
        except Exception as e:
            logger.error(f"Failed to start channel {name}: {e}")

    async def start_all(self) -> None:
        """Start all channels and the outbound dispatcher."""
        if not self.channels:
            logger.warning("No channels enabled")
            return

        self._dispatch_task = asyncio.create_task(self._dispatch_outbound())

        tasks = []
        for name, channel in self.channels.items():
            logger.info(f"Starting {name} channel...")
            tasks.append(asyncio.create_task(self._start_channel(name, channel)))

        # Channels run until stopped.
        await asyncio.gather(*tasks, return_exceptions=True)

    async def stop_all(self) -> None:
        """Stop all channels and the dispatcher."""
        logger.info("Stopping all channels...")

        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
        await self._stop_outbound_workers()

        for name, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info(f"Stopped {name} channel")
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

    async def _dispatch_outbound(self) -> None:
        """Dispatch outbound messages to the appropriate channel."""
        logger.info("Outbound dispatcher started")

        while True:
            try:
                msg = await asyncio.wait_for(self.bus.consume_outbound(), timeout=1.0)

                if msg.channel not in self.channels:
                    logger.warning(f"Unknown channel: {msg.channel}")
                    continue
                queue = self._outbound_queues.setdefault(msg.channel, asyncio.Queue())
                await queue.put(msg)
                self._ensure_outbound_worker(msg.channel)

            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def _ensure_outbound_worker(self, channel_name: str) -> None:
        """Ensure per-channel outbound worker exists."""
        worker = self._outbound_workers.get(channel_name)
        if worker is None or worker.done():
            queue = self._outbound_queues[channel_name]
            self._outbound_workers[channel_name] = asyncio.create_task(
                self._outbound_channel_worker(channel_name, queue)
            )

    async def _outbound_channel_worker(
        self,
        channel_name: str,
        queue: asyncio.Queue[OutboundMessage],
    ) -> None:
        """Send outbound messages serially for one channel."""
        channel = self.channels.get(channel_name)
        if not channel:
            return
        try:
            while not queue.empty():
                msg = queue.get_nowait()
                try:
                    await channel.send(msg)
                except Exception as e:
                    logger.error(f"Error sending to {channel_name}: {e}")
        finally:
            if self._outbound_workers.get(channel_name) is asyncio.current_task():
                self._outbound_workers.pop(channel_name, None)
            if queue.empty():
                self._outbound_queues.pop(channel_name, None)

    async def _stop_outbound_workers(self) -> None:
        """Cancel outbound workers."""
        workers = list(self._outbound_workers.values())
        self._outbound_workers.clear()
        self._outbound_queues.clear()
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def get_channel(self, name: str) -> BaseChannel | None:
        """Get a channel by name."""
        return self.channels.get(name)

    def get_status(self) -> dict[str, Any]:
        """Get status of all channels."""
        return {
            name: {"enabled": True, "running": channel.is_running}
            for name, channel in self.channels.items()
        }

    def provider_summary(self) -> list[str]:
        """One line per channel, used in /status and first-turn system notices."""
        return [
            f"{name}: {'running' if channel.is_running else 'stopped'}"
            for name, channel in self.channels.items()
        ]

    @property
    def enabled_channels(self) -> list[str]:
        """Get list of enabled channel names."""
        return list(self.channels.keys())

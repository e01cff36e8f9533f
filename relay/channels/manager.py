"""ChannelManager: lifecycle management for platform bindings.

Registers bindings with the router, the coordinator and the gateway, then
starts them concurrently. A binding's gateway route is marked ready only
after its ``start()`` returns; a binding that fails to start keeps
answering 503.
"""

from __future__ import annotations

import asyncio
import time

from relay.channels.base import BaseBinding
from relay.channels.coordinator import RunCoordinator
from relay.channels.gateway import Gateway
from relay.channels.protocol import HealthStatus, Platform
from relay.channels.router import CrossChannelRouter
from relay.core.logging import get_logger

_log = get_logger("channels.manager")


class ChannelManager:
    """Manages the lifecycle of all registered bindings."""

    def __init__(
        self,
        gateway: Gateway,
        coordinator: RunCoordinator,
        router: CrossChannelRouter,
    ) -> None:
        self._gateway = gateway
        self._coordinator = coordinator
        self._router = router
        self._bindings: dict[Platform, BaseBinding] = {}
        self._running: bool = False

    def register(self, binding: BaseBinding) -> None:
        """Register a binding and add its gateway route in the not-ready state."""
        platform = binding.platform
        if platform in self._bindings:
            raise ValueError(f"Binding already registered: {platform.value}")
        binding.attach(self._coordinator)
        self._router.register(binding)
        if binding.route_path:
            self._gateway.register(binding.route_path, binding.handle_request)
        self._bindings[platform] = binding
        _log.info(
            "CHANNEL binding registered",
            platform=platform.value,
            path=binding.route_path or "-",
        )

    async def start_all(self) -> None:
        """Start all registered bindings concurrently."""
        if not self._bindings:
            _log.info("CHANNEL no bindings registered, skipping start")
            return

        _log.info("CHANNEL starting bindings", count=len(self._bindings))
        results = await asyncio.gather(
            *(self._start_one(b) for b in self._bindings.values()),
            return_exceptions=True,
        )
        succeeded = sum(1 for r in results if r is None)
        failed = sum(1 for r in results if isinstance(r, BaseException))
        self._running = True
        _log.info("CHANNEL bindings started", succeeded=succeeded, failed=failed)

    async def _start_one(self, binding: BaseBinding) -> None:
        platform = binding.platform
        try:
            await binding.start()
        except Exception:
            _log.exception("CHANNEL binding start failed", platform=platform.value)
            raise
        if binding.route_path:
            self._gateway.mark_ready(binding.route_path)
        _log.info("CHANNEL binding started", platform=platform.value)

    async def stop_all(self) -> None:
        """Stop all running bindings gracefully."""
        if not self._running:
            return

        _log.info("CHANNEL stopping bindings", count=len(self._bindings))
        await asyncio.gather(
            *(self._stop_one(b) for b in self._bindings.values()),
            return_exceptions=True,
        )
        self._running = False
        _log.info("CHANNEL all bindings stopped")

    async def _stop_one(self, binding: BaseBinding) -> None:
        try:
            await binding.stop()
            _log.info("CHANNEL binding stopped", platform=binding.platform.value)
        except Exception:
            _log.exception("CHANNEL binding stop failed", platform=binding.platform.value)

    async def health_check_all(self) -> dict[str, HealthStatus]:
        """Run health checks on all bindings."""
        results: dict[str, HealthStatus] = {}
        for platform, binding in self._bindings.items():
            try:
                t0 = time.perf_counter()
                status = await binding.health_check()
                status.latency_ms = (time.perf_counter() - t0) * 1000
                results[platform.value] = status
            except Exception as e:
                results[platform.value] = HealthStatus(
                    healthy=False,
                    platform=platform,
                    details=str(e),
                )
        return results

    def get_binding(self, platform: Platform) -> BaseBinding | None:
        return self._bindings.get(platform)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def registered_platforms(self) -> list[Platform]:
        return list(self._bindings.keys())

"""Tests for the Gateway dispatch table, readiness gate and listener."""

from __future__ import annotations

import socket

import httpx
import pytest
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from relay.channels.gateway import Gateway
from relay.core.errors import GatewayError, ProtocolError


async def _ok(request):
    return JSONResponse({"handled": request.url.path})


@pytest.fixture
def gateway() -> Gateway:
    gw = Gateway(host="127.0.0.1")
    gw.register("/hook", _ok)
    return gw


@pytest.fixture
def client(gateway) -> TestClient:
    return TestClient(gateway.app)


# ── Health ──────────────────────────────────────────────────


class TestHealth:
    def test_health_is_always_ok(self, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.text == "ok"

    def test_health_other_methods_not_allowed(self, client) -> None:
        assert client.post("/health").status_code == 405


# ── Dispatch ────────────────────────────────────────────────


class TestDispatch:
    def test_unknown_path_is_404(self, client) -> None:
        assert client.post("/nope").status_code == 404
        assert client.get("/nope").status_code == 404

    def test_registered_path_is_503_until_ready(self, gateway, client) -> None:
        assert client.post("/hook").status_code == 503
        gateway.mark_ready("/hook")
        resp = client.post("/hook")
        assert resp.status_code == 200
        assert resp.json() == {"handled": "/hook"}

    def test_non_post_on_known_path_is_405(self, gateway, client) -> None:
        gateway.mark_ready("/hook")
        assert client.get("/hook").status_code == 405
        assert client.put("/hook").status_code == 405

    def test_relay_error_maps_to_its_status(self, gateway, client) -> None:
        async def reject(request):
            raise ProtocolError("bad signature", http_status=401)

        gateway.register("/strict", reject)
        gateway.mark_ready("/strict")
        resp = client.post("/strict")
        assert resp.status_code == 401
        assert resp.json()["code"] == "PROTOCOL"

    def test_unexpected_error_is_500_and_listener_survives(self, gateway, client) -> None:
        async def explode(request):
            raise RuntimeError("boom")

        gateway.register("/boom", explode)
        gateway.mark_ready("/boom")
        assert client.post("/boom").status_code == 500
        assert client.get("/health").status_code == 200

    def test_responses_carry_request_id(self, client) -> None:
        resp = client.get("/health", headers={"X-Request-ID": "req-abc"})
        assert resp.headers["X-Request-ID"] == "req-abc"


# ── Route table ─────────────────────────────────────────────


class TestRouteTable:
    def test_paths_register_once(self, gateway) -> None:
        with pytest.raises(ValueError):
            gateway.register("/hook", _ok)

    def test_health_path_is_reserved(self, gateway) -> None:
        with pytest.raises(ValueError):
            gateway.register("/health", _ok)

    def test_mark_ready_requires_registration(self, gateway) -> None:
        with pytest.raises(KeyError):
            gateway.mark_ready("/missing")

    def test_routes_and_readiness_are_reported(self, gateway) -> None:
        assert gateway.routes == ["/hook"]
        assert gateway.is_ready("/hook") is False


# ── Listener ────────────────────────────────────────────────


class TestListener:
    async def test_bind_failure_raises_gateway_error(self) -> None:
        taken = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        taken.bind(("127.0.0.1", 0))
        taken.listen()
        port = taken.getsockname()[1]
        try:
            with pytest.raises(GatewayError) as exc_info:
                await Gateway(host="127.0.0.1").start(port)
            assert exc_info.value.port == port
        finally:
            taken.close()

    async def test_start_serves_health_then_stops(self, gateway) -> None:
        await gateway.start(0)
        try:
            assert gateway.is_serving
            async with httpx.AsyncClient() as http:
                resp = await http.get(f"http://127.0.0.1:{gateway.port}/health")
            assert resp.status_code == 200
        finally:
            await gateway.stop()
        assert not gateway.is_serving

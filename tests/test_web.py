"""Tests for the HTTP control surface."""

import pytest
from fastapi.testclient import TestClient

from recite.corpus import ReferenceCorpus
from recite.web import ControlServer

from conftest import FakeCapture, build_machine, make_corpus


@pytest.fixture()
def machine(clock, scheduler, bus):
    return build_machine(make_corpus(3), clock, scheduler, bus=bus, capture=FakeCapture())


@pytest.fixture()
def client(machine, bus):
    # No context manager: lifespan (mDNS, bus subscriptions) is not run
    server = ControlServer(machine, bus, mdns_enabled=False)
    return TestClient(server.app)


class TestControlRoutes:
    def test_status(self, client):
        response = client.get("/api/status")
        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "idle"
        assert body["position"] == -1
        assert body["total_lines"] == 4
        assert body["line"] is None

    def test_start_and_stop(self, client, machine):
        assert client.post("/api/start").json()["state"] == "listening"
        assert machine.permission.value == "granted"
        assert client.post("/api/stop").json()["state"] == "idle"

    def test_start_denied(self, clock, scheduler, bus):
        machine = build_machine(make_corpus(3), clock, scheduler, bus=bus, capture=FakeCapture(granted=False))
        client = TestClient(ControlServer(machine, bus, mdns_enabled=False).app)

        response = client.post("/api/start")

        assert response.status_code == 503
        assert client.get("/api/status").json()["permission"] == "denied"

    def test_navigation(self, client):
        assert client.post("/api/next").json()["position"] == 0
        assert client.post("/api/next").json()["position"] == 1
        assert client.post("/api/prev").json()["position"] == 0

        body = client.post("/api/goto/2").json()
        assert body["position"] == 2
        assert body["line"]["id"] == "3a"
        assert body["line"]["confidence_level"] == "high"

    def test_title_and_reset(self, client):
        client.post("/api/goto/1")
        body = client.post("/api/title").json()
        assert body["line"] is None
        assert body["position"] == 1

        body = client.post("/api/reset").json()
        assert body["position"] == -1
        assert body["completed_count"] == 0

    def test_goto_without_corpus(self, clock, scheduler, bus):
        machine = build_machine(ReferenceCorpus.empty(), clock, scheduler, bus=bus)
        client = TestClient(ControlServer(machine, bus, mdns_enabled=False).app)
        assert client.post("/api/goto/0").status_code == 409

    def test_reader_page(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "Recitation Companion" in response.text


class TestWebSocket:
    def test_initial_status_and_commands(self, client, machine):
        with client.websocket_connect("/ws") as ws:
            status = ws.receive_json()
            assert status["type"] == "status"
            assert status["total_lines"] == 4

            ws.send_json({"type": "goto", "index": 2})
            ws.send_json({"type": "ping"})

        assert client.get("/api/status").json()["position"] == 2


class TestBroadcast:
    def test_display_updates_reach_socket(self, machine, bus):
        server = ControlServer(machine, bus, mdns_enabled=False)
        bus.start()
        try:
            with TestClient(server.app) as client:
                with client.websocket_connect("/ws") as ws:
                    assert ws.receive_json()["type"] == "status"

                    machine.go_next()
                    messages = {m["type"]: m for m in (ws.receive_json(), ws.receive_json())}

                assert bus.get_stats()["subscribers"]
            # Lifespan shutdown drops the bus subscriptions
            assert bus.get_stats()["subscribers"] == []
        finally:
            bus.stop()

        assert messages["line"]["line"]["id"] == "1a"
        assert messages["state"]["position"] == 0
        assert messages["state"]["completed_ids"] == []

    def test_connection_dropped_after_handler_error(self, machine, bus):
        server = ControlServer(machine, bus, mdns_enabled=False)

        async def broken(data):
            raise RuntimeError("handler failed")

        server._handle_client_message = broken
        client = TestClient(server.app)

        with pytest.raises(RuntimeError):
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
                ws.send_json({"type": "next"})
                ws.receive_json()

        assert server.manager.active_connections == []

"""Tests for request ID middleware."""

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import StreamingResponse
from fastapi.testclient import TestClient

from relay.app.middleware.request_id import RequestIdMiddleware, get_request_id


class TestRequestIdMiddleware:
    """Test RequestIdMiddleware."""

    @pytest.fixture
    def app(self):
        app = FastAPI()
        app.add_middleware(RequestIdMiddleware)

        @app.get("/test")
        async def test_endpoint(request: Request):
            return {"request_id": get_request_id(request)}

        @app.get("/stream")
        async def stream_endpoint():
            async def body():
                yield "a"
                yield "b"

            return StreamingResponse(body(), media_type="text/plain")

        return app

    def test_generates_request_id(self, app):
        resp = TestClient(app).get("/test")

        request_id = resp.headers["X-Request-ID"]
        assert len(request_id) == 36
        assert resp.json()["request_id"] == request_id

    def test_reuses_incoming_request_id(self, app):
        resp = TestClient(app).get("/test", headers={"X-Request-ID": "client-supplied"})

        assert resp.headers["X-Request-ID"] == "client-supplied"
        assert resp.json()["request_id"] == "client-supplied"

    def test_unique_per_request(self, app):
        client = TestClient(app)
        ids = {client.get("/test").headers["X-Request-ID"] for _ in range(5)}
        assert len(ids) == 5

    def test_streaming_response_passes_through(self, app):
        resp = TestClient(app).get("/stream")

        assert resp.text == "ab"
        assert "X-Request-ID" in resp.headers

    def test_request_id_unknown_without_middleware(self):
        app = FastAPI()

        @app.get("/test")
        async def test_endpoint(request: Request):
            return {"request_id": get_request_id(request)}

        assert TestClient(app).get("/test").json() == {"request_id": "unknown"}

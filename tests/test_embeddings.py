"""Tests for the embedding client and its rate limiter."""

import numpy as np
import pytest
import requests

from visual_identify.embeddings import JinaConfig, JinaEmbeddingClient, TokenBucket, content_hash
from visual_identify.errors import EmbeddingFailure


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, payload=None, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response


CONFIG = JinaConfig(api_url="https://embeddings.test/v1", model="clip", dimensions=3, requests_per_second=100, burst=10)


def client_for(session):
    return JinaEmbeddingClient(api_key="key", config=CONFIG, timeout_seconds=5, session=session)


class TestContentHash:

    def test_stable_sha256(self):
        assert content_hash(b"abc") == content_hash(b"abc")
        assert content_hash(b"abc") != content_hash(b"abd")
        assert len(content_hash(b"abc")) == 64


class TestTokenBucket:

    def test_burst_then_refill(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=1, capacity=2, clock=clock, sleep=clock.sleep)
        assert bucket.try_acquire()
        assert bucket.try_acquire()
        assert not bucket.try_acquire()
        clock.now += 1
        assert bucket.try_acquire()

    def test_acquire_waits_for_token(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2, capacity=1, clock=clock, sleep=clock.sleep)
        assert bucket.acquire()
        assert bucket.acquire(timeout=5)
        assert clock.now == pytest.approx(0.5)

    def test_acquire_gives_up_at_timeout(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=0.1, capacity=1, clock=clock, sleep=clock.sleep)
        bucket.acquire()
        assert not bucket.acquire(timeout=1)

    def test_rejects_bad_rate(self):
        with pytest.raises(ValueError):
            TokenBucket(rate=0, capacity=1)


class TestJinaEmbeddingClient:

    def test_returns_vector_and_hash(self):
        session = FakeSession(FakeResponse({"data": [{"embedding": [0.1, 0.2, 0.3]}]}))
        result = client_for(session).embed(b"photo")
        assert result.vector.dtype == np.float32
        assert result.vector.shape == (3,)
        assert result.content_hash == content_hash(b"photo")
        sent = session.requests[0]
        assert sent["headers"]["Authorization"] == "Bearer key"
        assert sent["json"]["input"][0]["image"].startswith("data:image/jpeg;base64,")

    def test_http_error(self):
        session = FakeSession(FakeResponse(status=503))
        with pytest.raises(EmbeddingFailure):
            client_for(session).embed(b"photo")

    def test_connection_error(self):
        session = FakeSession(exc=requests.ConnectionError("refused"))
        with pytest.raises(EmbeddingFailure):
            client_for(session).embed(b"photo")

    def test_bad_json(self):
        with pytest.raises(EmbeddingFailure):
            client_for(FakeSession(FakeResponse(None))).embed(b"photo")

    def test_missing_vector(self):
        with pytest.raises(EmbeddingFailure):
            client_for(FakeSession(FakeResponse({"data": []}))).embed(b"photo")

    def test_wrong_dimension(self):
        session = FakeSession(FakeResponse({"data": [{"embedding": [0.1, 0.2]}]}))
        with pytest.raises(EmbeddingFailure):
            client_for(session).embed(b"photo")

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("JINA_API_KEY", raising=False)
        client = JinaEmbeddingClient(config=CONFIG, session=FakeSession())
        with pytest.raises(EmbeddingFailure):
            client.embed(b"photo")

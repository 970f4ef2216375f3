from __future__ import annotations

import base64
import hashlib
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import numpy as np
import requests

from visual_identify.errors import EmbeddingFailure

_LOGGER = logging.getLogger(__name__)


def content_hash(image_bytes: bytes) -> str:
    return hashlib.sha256(image_bytes).hexdigest()


@dataclass(frozen=True)
class EmbeddingResult:
    vector: np.ndarray
    content_hash: str


class EmbeddingClient(Protocol):
    def embed(self, image_bytes: bytes) -> EmbeddingResult:
        ...


class TokenBucket:
    """Blocking token bucket: `rate` tokens per second, bursts up to `capacity`."""

    def __init__(
        self,
        rate: float,
        capacity: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be positive")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def acquire(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return True
                wait = (1 - self._tokens) / self.rate
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            self._sleep(wait)


@dataclass(frozen=True)
class JinaConfig:
    api_url: str
    model: str
    dimensions: int
    requests_per_second: float
    burst: int

    @classmethod
    def from_env(cls) -> "JinaConfig":
        return cls(
            api_url=os.getenv("VI_JINA_API_URL", "https://api.jina.ai/v1/embeddings"),
            model=os.getenv("VI_JINA_MODEL", "jina-clip-v1"),
            dimensions=int(os.getenv("VI_EMBEDDING_DIMENSIONS", "768")),
            requests_per_second=float(os.getenv("VI_JINA_RPS", "5")),
            burst=int(os.getenv("VI_JINA_BURST", "10")),
        )


class JinaEmbeddingClient:
    """Image embeddings from the Jina CLIP HTTP API."""

    def __init__(
        self,
        api_key: str | None = None,
        config: JinaConfig | None = None,
        *,
        timeout_seconds: float = 20.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key or os.getenv("JINA_API_KEY")
        self.config = config or JinaConfig.from_env()
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.limiter = TokenBucket(self.config.requests_per_second, self.config.burst)

    def embed(self, image_bytes: bytes) -> EmbeddingResult:
        if not self.api_key:
            raise EmbeddingFailure("JINA_API_KEY is required for image embeddings.")
        if not image_bytes:
            raise EmbeddingFailure("Image payload is empty.")
        if not self.limiter.acquire(timeout=self.timeout_seconds):
            raise EmbeddingFailure("Embedding rate limit wait exceeded the request timeout.")

        b64 = base64.b64encode(image_bytes).decode("utf-8")
        payload = {
            "model": self.config.model,
            "input": [{"image": f"data:image/jpeg;base64,{b64}"}],
        }
        try:
            resp = self.session.post(
                self.config.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise EmbeddingFailure(f"Embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingFailure("Embedding response was not valid JSON.") from exc

        try:
            values = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EmbeddingFailure("Embedding response had no vector.") from exc

        vector = np.asarray(values, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self.config.dimensions:
            raise EmbeddingFailure(
                f"Expected a {self.config.dimensions}-d embedding, got shape {tuple(vector.shape)}."
            )
        _LOGGER.debug("Embedded image (%d dims)", vector.shape[0])
        return EmbeddingResult(vector=vector, content_hash=content_hash(image_bytes))

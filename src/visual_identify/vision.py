from __future__ import annotations

import base64
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Protocol

from openai import OpenAI

from visual_identify.errors import OCRFailure
from visual_identify.models import VisionSignals

_LOGGER = logging.getLogger(__name__)

KNOWN_BRANDS: dict[str, list[str]] = {
    "watch": [
        "Invicta", "Rolex", "Omega", "Seiko", "Citizen", "Casio", "TAG Heuer", "Fossil", "Tissot",
        "Hamilton", "Bulova", "Orient", "Timex", "Movado", "Breitling", "Tudor", "Longines",
        "Cartier", "Hublot",
    ],
    "shoe": ["Nike", "Jordan", "Adidas", "New Balance", "Asics", "Converse", "Vans", "Puma", "Reebok"],
    "handbag": ["Louis Vuitton", "Gucci", "Chanel", "Coach", "Michael Kors", "Prada", "Hermes", "Kate Spade"],
}

# Attribute vocabularies per category; anything else the model returns is dropped.
ATTRIBUTE_KEYS: dict[str, list[str]] = {
    "watch": ["dial_color", "bezel_color", "case_shape"],
    "shoe": ["primary_color", "silhouette"],
    "handbag": ["primary_color", "material", "shape"],
}
DEFAULT_ATTRIBUTE_KEYS = ["primary_color", "shape"]


@dataclass(frozen=True)
class VisionConfig:
    model: str

    @classmethod
    def from_env(cls) -> "VisionConfig":
        return cls(model=os.getenv("VI_VISION_MODEL", "gpt-4o-mini"))


class VisionClient(Protocol):
    def extract_signals(self, image_bytes: bytes, category: str | None = None) -> VisionSignals:
        ...


def make_client() -> OpenAI:
    return OpenAI()


def normalize_brand(raw: str | None, category: str | None = None) -> str | None:
    """Snap free-form brand text onto a known brand name when one contains the other."""
    if not raw:
        return None
    cleaned = re.sub(r"[^a-z0-9 ]", "", raw.lower()).strip()
    if not cleaned:
        return None
    pools = [KNOWN_BRANDS.get(category or "", [])] if category in KNOWN_BRANDS else list(KNOWN_BRANDS.values())
    for pool in pools:
        for known in pool:
            known_lower = known.lower()
            if known_lower in cleaned or cleaned in known_lower:
                return known
    return raw.strip()


def _strip_fences(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = re.sub(r"```(?:json)?\n?", "", text).replace("```", "").strip()
    return text


def parse_signals(raw: str, category: str | None = None) -> VisionSignals:
    try:
        parsed: dict[str, Any] = json.loads(_strip_fences(raw or "{}"))
    except json.JSONDecodeError as exc:
        raise OCRFailure(f"Vision response was not JSON: {raw[:80]!r}") from exc
    if not isinstance(parsed, dict):
        raise OCRFailure("Vision response was not a JSON object.")

    keys = ATTRIBUTE_KEYS.get(category or "", DEFAULT_ATTRIBUTE_KEYS)
    raw_attributes = parsed.get("attributes") or {}
    attributes = {
        key: str(raw_attributes[key]).strip().lower()
        for key in keys
        if isinstance(raw_attributes, dict) and raw_attributes.get(key)
    }
    brand = normalize_brand(parsed.get("brand"), category)
    model_text = str(parsed.get("model") or "").strip() or None
    confidence = parsed.get("confidence")
    try:
        confident = float(confidence) >= 0.6 if confidence is not None else bool(brand)
    except (TypeError, ValueError):
        confident = False

    return VisionSignals(
        brand_text=brand,
        model_text=model_text,
        attributes=attributes,
        confident=bool(confident and brand),
    )


def extract_item_signals(
    client: OpenAI,
    image_bytes: bytes,
    model: str,
    category: str | None = None,
) -> VisionSignals:
    """Read brand/model text and distinguishing attributes off the item."""
    b64 = base64.b64encode(image_bytes).decode("utf-8")
    item = category or "item"
    known = KNOWN_BRANDS.get(category or "", [])
    keys = ATTRIBUTE_KEYS.get(category or "", DEFAULT_ATTRIBUTE_KEYS)

    prompt = (
        f"Analyze this {item}. Read the brand name and model line printed on it.\n"
        "Only report text you can actually read; do not guess from shape alone.\n"
        "Return ONLY valid JSON with keys:\n"
        "- brand (string or null)\n"
        "- model (string or null)\n"
        f"- attributes (object; keys from {keys}; short lowercase values)\n"
        "- confidence (number 0-1; how legible the brand text is)\n"
    )
    if known:
        prompt += f"Common brands: {', '.join(known)}\n"

    completion = client.chat.completions.create(
        model=model,
        messages=[
            {"role": "developer", "content": "Return only JSON. No markdown, no extra text."},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64}", "detail": "low"}},
                ],
            },
        ],
        response_format={"type": "json_object"},
        temperature=0.0,
        max_tokens=120,
    )
    raw = completion.choices[0].message.content or "{}"
    return parse_signals(raw, category)


class OpenAIVisionClient:
    def __init__(self, client: OpenAI | None = None, config: VisionConfig | None = None) -> None:
        self.config = config or VisionConfig.from_env()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not os.getenv("OPENAI_API_KEY"):
                raise OCRFailure("OPENAI_API_KEY is not set.")
            self._client = make_client()
        return self._client

    def extract_signals(self, image_bytes: bytes, category: str | None = None) -> VisionSignals:
        signals = extract_item_signals(self.client, image_bytes, self.config.model, category)
        _LOGGER.info(
            "Vision signals: brand=%s model=%s confident=%s",
            signals.brand_text,
            signals.model_text,
            signals.confident,
        )
        return signals

"""
Screenshot → stats extraction.

StatsExtractor owns the normalization and essential-field policy; the actual
reading of the image is delegated to a vision client (OpenAIVision in
production) that returns the raw JSON object.
"""

from __future__ import annotations
import hashlib
import json
import math
import re
import traceback
from dataclasses import dataclass, field
from typing import Any

from openai import AsyncOpenAI, OpenAIError

ESSENTIAL_FIELDS = ("player_tag", "games_played", "win_pct")

EXTRACTION_PROMPT = (
    "You are given an image of an NBA2K Stats screen. Extract EXACTLY one JSON object with these keys:\n"
    '{"games_played": <int|null>, "win_pct": <float|null>, "points": <int|null>, "rebounds": <int|null>, '
    '"assists": <int|null>, "player_tag": <string|null>, "platform": <string|null>}\n'
    "player_tag is the PSN or Gamertag shown on the screen. platform is PSN, Xbox, or PC when visible. "
    "If a field is unreadable, use null. Return ONLY the JSON object, with no explanation. Example:\n"
    '{"games_played":147,"win_pct":70.1,"points":1155,"rebounds":155,"assists":336,'
    '"player_tag":"brockhogg","platform":"PSN"}'
)


class VisionUnavailable(Exception):
    """No working inference model is configured."""


@dataclass(frozen=True)
class NormalizedStats:
    player_tag: str
    games_played: int
    win_pct: float
    points: int | None = None
    rebounds: int | None = None
    assists: int | None = None
    platform: str | None = None
    source: str | None = None


@dataclass(frozen=True)
class ExtractionFailure:
    reason: str
    missing: tuple[str, ...] = ()
    parsed: dict[str, Any] = field(default_factory=dict)


def _number(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "").rstrip("%").strip()
        if not value:
            return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None

def _int_or_none(value) -> int | None:
    num = _number(value)
    return int(num) if num is not None else None

def _text_or_none(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_model_json(text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a model reply (code fences tolerated)."""
    cleaned = text.replace("```json", "").replace("```", "").strip()
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if match:
        cleaned = match.group(0)
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("model reply is not a JSON object")
    return data


class StatsExtractor:
    def __init__(self, vision):
        self.vision = vision

    @property
    def available(self) -> bool:
        return bool(getattr(self.vision, "available", False))

    @staticmethod
    def fingerprint(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def normalize(raw: dict[str, Any]) -> dict[str, Any]:
        return {
            "games_played": _int_or_none(raw.get("games_played")),
            "win_pct": _number(raw.get("win_pct")),
            "points": _int_or_none(raw.get("points")),
            "rebounds": _int_or_none(raw.get("rebounds")),
            "assists": _int_or_none(raw.get("assists")),
            "player_tag": _text_or_none(raw.get("player_tag")),
            "platform": _text_or_none(raw.get("platform")),
        }

    def validate(self, raw: dict[str, Any], source: str | None = None) -> NormalizedStats | ExtractionFailure:
        parsed = self.normalize(raw)
        missing = tuple(k for k in ESSENTIAL_FIELDS if parsed[k] is None)
        if missing:
            return ExtractionFailure(reason="missing essential fields", missing=missing, parsed=parsed)
        return NormalizedStats(source=source, **parsed)

    async def extract(self, image_url: str) -> NormalizedStats | ExtractionFailure:
        if not self.available:
            raise VisionUnavailable("no working vision model")
        try:
            raw = await self.vision.extract(image_url)
        except (OpenAIError, ValueError) as e:
            print(f"⚠ Vision extraction failed: {e}")
            return ExtractionFailure(reason=f"vision call failed: {type(e).__name__}")
        return self.validate(raw, source=getattr(self.vision, "source", None))


class OpenAIVision:
    """Vision client over the OpenAI Responses API with model fallback."""

    def __init__(self, api_key: str, candidates: tuple[str, ...], debug: bool = False):
        self.client = AsyncOpenAI(api_key=api_key) if api_key else None
        self.candidates = candidates
        self.debug = debug
        self.model: str | None = None

    @property
    def available(self) -> bool:
        return self.client is not None and self.model is not None

    @property
    def source(self) -> str | None:
        return f"openai:{self.model}" if self.model else None

    async def _probe(self, model: str) -> bool:
        try:
            resp = await self.client.responses.create(
                model=model,
                input=[{"role": "user", "content": [{"type": "input_text", "text": 'Respond with JSON: {"ping":"pong"}'}]}],
                max_output_tokens=30,
            )
            return bool(resp.output_text)
        except OpenAIError as e:
            if self.debug:
                print(f"⚠ probe failed for {model}: {e}")
            return False

    async def choose_model(self) -> str | None:
        """Keep the first candidate that answers a ping."""
        if self.client is None:
            print("⚠ OPENAI_API_KEY not provided; image parsing disabled.")
            return None
        for name in self.candidates:
            if await self._probe(name):
                self.model = name
                print(f"✓ Selected OpenAI model: {name}")
                return name
        print("⚠ No OpenAI model candidates responded. Image parsing disabled until a working model/API key is available.")
        return None

    async def extract(self, image_url: str) -> dict[str, Any]:
        if not self.available:
            raise VisionUnavailable("no working vision model")
        if self.debug:
            print(f"OpenAI parse request using model {self.model}")
        resp = await self.client.responses.create(
            model=self.model,
            input=[
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": EXTRACTION_PROMPT},
                        {"type": "input_image", "image_url": image_url},
                    ],
                }
            ],
            max_output_tokens=800,
        )
        text = resp.output_text
        if not text:
            raise ValueError("no textual output from OpenAI response")
        try:
            return parse_model_json(text)
        except json.JSONDecodeError:
            if self.debug:
                traceback.print_exc()
            raise

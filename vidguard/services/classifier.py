"""
Frame classification against an external image-moderation provider.

ClassifierClient owns transport, timeout and retry; a ProviderAdapter
translates each provider's JSON into a FrameScore.
"""

import asyncio
import math
from pathlib import Path
from typing import Any, Protocol

import httpx
import structlog

from vidguard.core.config import Settings
from vidguard.schemas import FrameScore, ScoreSource

logger = structlog.get_logger()


class ClassifierError(Exception):
    """Raised for transport or provider failures on a single call."""
    pass


class ProviderAdapter(Protocol):
    name: str
    models_used: list[str]

    def build_form(self) -> dict[str, str]:
        ...

    def normalize(self, raw: dict[str, Any], frame_index: int) -> FrameScore:
        ...


def _prob(section: Any, key: str = "prob") -> float:
    if not isinstance(section, dict):
        return 0.0
    try:
        value = float(section.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0
    return value if math.isfinite(value) else 0.0


def _non_finite(constant: str) -> None:
    # NaN and Infinity tokens are read as absent so they never reach storage
    return None


def _clip(value: float) -> float:
    return min(max(value, 0.0), 1.0)


class SightengineAdapter:
    """Sightengine check.json response (nudity-2.0, offensive, gore)."""

    name = "sightengine"

    def __init__(self, api_user: str, api_secret: str, models: str = "nudity-2.0,offensive,gore") -> None:
        self.api_user = api_user
        self.api_secret = api_secret
        self.models = models

    @property
    def models_used(self) -> list[str]:
        return [m.strip() for m in self.models.split(",") if m.strip()]

    def build_form(self) -> dict[str, str]:
        return {
            "models": self.models,
            "api_user": self.api_user,
            "api_secret": self.api_secret,
        }

    @staticmethod
    def nsfw_score(data: dict[str, Any]) -> float:
        nudity = data.get("nudity")
        if not isinstance(nudity, dict):
            return 0.0
        return _clip(
            _prob(nudity, "sexual_activity") * 1.0
            + _prob(nudity, "sexual_display") * 0.9
            + _prob(nudity, "raw") * 0.7
            + _prob(nudity, "partial") * 0.5
        )

    @staticmethod
    def violence_score(data: dict[str, Any]) -> float:
        return _clip(_prob(data.get("gore")) * 0.8 + _prob(data.get("offensive")) * 0.6)

    @staticmethod
    def scene_score(data: dict[str, Any]) -> float:
        score = _prob(data.get("offensive")) * 0.5
        nudity = data.get("nudity")
        if isinstance(nudity, dict) and nudity.get("none") is not None:
            score += (1 - _prob(nudity, "none")) * 0.3
        return _clip(score)

    def normalize(self, raw: dict[str, Any], frame_index: int) -> FrameScore:
        if raw.get("status") == "failure":
            error = raw.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ClassifierError(f"Provider failure: {message or 'unknown error'}")

        # a response missing some requested model sections still scores, but is marked degraded
        expected = ("nudity", "offensive", "gore")
        missing = [key for key in expected if not isinstance(raw.get(key), dict)]
        if len(missing) == len(expected):
            raise ClassifierError("Provider response contained no model output")

        return FrameScore(
            frame_index=frame_index,
            nsfw=self.nsfw_score(raw),
            violence=self.violence_score(raw),
            scene=self.scene_score(raw),
            source=ScoreSource.FALLBACK if missing else ScoreSource.PROVIDER,
            details={key: raw[key] for key in expected if key in raw},
        )


ADAPTERS = {"sightengine": SightengineAdapter}


def build_adapter(settings: Settings) -> ProviderAdapter:
    adapter_cls = ADAPTERS.get(settings.classifier_provider)
    if adapter_cls is None:
        raise ValueError(f"Unknown classifier provider: {settings.classifier_provider}")
    return adapter_cls(
        settings.sightengine_user,
        settings.sightengine_secret,
        settings.sightengine_models,
    )


class ClassifierClient:
    """Scores a single frame per call; never raises for provider errors."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        adapter: ProviderAdapter,
        api_url: str,
        max_attempts: int = 2,
        backoff_seconds: float = 1.0,
        configured: bool = True,
    ) -> None:
        self.http = http
        self.adapter = adapter
        self.api_url = api_url
        self.max_attempts = max(max_attempts, 1)
        self.backoff_seconds = backoff_seconds
        self.configured = configured

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient | None = None) -> "ClassifierClient":
        if http is None:
            http = httpx.AsyncClient(timeout=httpx.Timeout(settings.classifier_timeout))
        return cls(
            http=http,
            adapter=build_adapter(settings),
            api_url=settings.sightengine_api_url,
            max_attempts=settings.classifier_max_attempts,
            backoff_seconds=settings.classifier_backoff_seconds,
            configured=settings.classifier_configured,
        )

    @property
    def provider(self) -> str:
        return self.adapter.name

    async def _call(self, frame_path: str, frame_index: int) -> FrameScore:
        content = await asyncio.to_thread(Path(frame_path).read_bytes)
        try:
            response = await self.http.post(
                self.api_url,
                data=self.adapter.build_form(),
                files={"media": (Path(frame_path).name, content, "image/jpeg")},
            )
            response.raise_for_status()
            payload = response.json(parse_constant=_non_finite)
        except (httpx.HTTPError, httpx.InvalidURL, RuntimeError, ValueError) as e:
            # RuntimeError: the client was closed under us
            raise ClassifierError(str(e) or e.__class__.__name__) from e

        if not isinstance(payload, dict):
            raise ClassifierError("Provider returned a non-object payload")
        try:
            return self.adapter.normalize(payload, frame_index)
        except (ValueError, TypeError, AttributeError) as e:
            raise ClassifierError(f"Unreadable provider response: {e}") from e

    async def classify(self, frame_path: str, frame_index: int = 0) -> FrameScore:
        last_error = "Max retries exceeded"
        for attempt in range(1, self.max_attempts + 1):
            try:
                if not self.configured:
                    raise ClassifierError("Classifier credentials missing")
                return await self._call(frame_path, frame_index)
            except (ClassifierError, OSError) as e:
                last_error = str(e)
                if attempt < self.max_attempts:
                    wait = self.backoff_seconds * attempt
                    logger.warning(
                        "classifier_retry",
                        frame_index=frame_index,
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        wait=wait,
                        error=last_error,
                    )
                    await asyncio.sleep(wait)

        logger.warning("classifier_failed", frame_index=frame_index, error=last_error)
        return FrameScore.failed(frame_index, last_error)

    async def aclose(self) -> None:
        await self.http.aclose()

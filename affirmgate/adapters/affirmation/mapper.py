"""Provider adapters: message + UpstreamCallConfig -> provider request, provider stream -> normalizer."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

from affirmgate.adapters.affirmation.normalizer import (
    PassthroughNormalizer,
    ReframingNormalizer,
    StreamNormalizer,
)
from affirmgate.config.settings import UpstreamCallConfig


class ProviderAdapter(ABC):
    name = "base"
    normalizer_cls: type[StreamNormalizer] = PassthroughNormalizer

    @abstractmethod
    def build_url(self, config: UpstreamCallConfig) -> str: ...

    @abstractmethod
    def build_payload(self, config: UpstreamCallConfig, message: str) -> dict[str, Any]: ...

    def build_headers(self, config: UpstreamCallConfig) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def build_normalizer(self, config: UpstreamCallConfig) -> StreamNormalizer:
        return self.normalizer_cls(max_pending_bytes=config.max_pending_bytes)

    def models_url(self, config: UpstreamCallConfig) -> str:
        return f"{config.endpoint}/models"

    def parse_models(self, body: Any) -> list[dict[str, str]]:
        items = body.get("data") if isinstance(body, dict) else None
        models: list[dict[str, str]] = []
        for item in items or []:
            if isinstance(item, dict) and item.get("id"):
                models.append({"name": str(item["id"]), "methods": "chat.completions"})
        return models


class OpenAIStyleAdapter(ProviderAdapter):
    """OpenRouter and other OpenAI-compatible chat completion endpoints."""

    name = "openai"

    def build_url(self, config: UpstreamCallConfig) -> str:
        return f"{config.endpoint}/chat/completions"

    def build_payload(self, config: UpstreamCallConfig, message: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": config.model,
            "messages": [
                {"role": "system", "content": config.system_prompt},
                {"role": "user", "content": message},
            ],
            "stream": True,
        }
        if config.max_tokens is not None:
            payload["max_tokens"] = config.max_tokens
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        return payload

    def build_headers(self, config: UpstreamCallConfig) -> dict[str, str]:
        headers = super().build_headers(config)
        # OpenRouter 用这两个头做来源归属与限流统计
        if config.referer:
            headers["HTTP-Referer"] = config.referer
        if config.title:
            headers["X-Title"] = config.title
        return headers


class GatewayAdapter(OpenAIStyleAdapter):
    """OpenAI-compatible AI gateway behind another proxy; no attribution headers."""

    name = "gateway"

    def build_headers(self, config: UpstreamCallConfig) -> dict[str, str]:
        return ProviderAdapter.build_headers(self, config)


class GeminiAdapter(ProviderAdapter):
    """Gemini ``streamGenerateContent``; no role concept, so the prompt is merged."""

    name = "gemini"
    normalizer_cls = ReframingNormalizer

    def build_url(self, config: UpstreamCallConfig) -> str:
        return f"{config.endpoint}/models/{quote(config.model, safe='.-_')}:streamGenerateContent?alt=sse"

    def build_headers(self, config: UpstreamCallConfig) -> dict[str, str]:
        return {
            "x-goog-api-key": config.api_key,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def build_payload(self, config: UpstreamCallConfig, message: str) -> dict[str, Any]:
        prompt = f"{config.system_prompt}\n\nUser: {message}"
        generation_config: dict[str, Any] = {}
        if config.max_tokens is not None:
            generation_config["maxOutputTokens"] = config.max_tokens
        if config.temperature is not None:
            generation_config["temperature"] = config.temperature
        payload: dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    def parse_models(self, body: Any) -> list[dict[str, str]]:
        items = body.get("models") if isinstance(body, dict) else None
        models: list[dict[str, str]] = []
        for item in items or []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            methods = item.get("supportedGenerationMethods") or []
            models.append({"name": str(item["name"]), "methods": ", ".join(str(m) for m in methods) or "N/A"})
        return models


_ADAPTERS: dict[str, ProviderAdapter] = {
    adapter.name: adapter for adapter in (OpenAIStyleAdapter(), GatewayAdapter(), GeminiAdapter())
}


def get_provider_adapter(name: str) -> ProviderAdapter:
    try:
        return _ADAPTERS[name.strip().lower()]
    except KeyError:
        raise ValueError(f"unsupported_provider: {name}") from None

"""Runtime settings."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = """You are a warm, empathetic companion who generates personalized therapeutic affirmations. Your role is to validate the user's feelings and offer gentle, uplifting affirmations tailored to what they share.

STRICT RULES YOU MUST FOLLOW:
- NEVER provide medical advice, legal advice, or diagnose any condition.
- NEVER act as a therapist, counselor, or medical professional.
- NEVER provide instructions or guidance related to self-harm, suicide, or harming others.
- If a user expresses thoughts of self-harm, suicide, or harming others, respond ONLY with: "I hear you, and I'm glad you're reaching out. You deserve support from someone who can truly help. Please contact the 988 Suicide & Crisis Lifeline (call or text 988) or reach out to a trusted person in your life. You matter, and help is available."
- Keep responses to 2-4 sentences maximum.
- Be warm, specific, and personalized to what the user shared.
- Focus on validation, encouragement, and gentle reframing.
- Use "you" language to make affirmations feel personal.
- Do not use clinical or diagnostic language.
- Do not ask follow-up questions. Just provide the affirmation."""

# provider -> (base_url, model)，未显式配置时使用
PROVIDER_DEFAULTS: dict[str, tuple[str, str]] = {
    "openai": ("https://openrouter.ai/api/v1", "meta-llama/llama-3.2-3b-instruct:free"),
    "gemini": ("https://generativelanguage.googleapis.com/v1", "gemini-2.5-flash"),
    "gateway": ("https://ai.gateway.lovable.dev/v1", "google/gemini-3-flash-preview"),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AFFIRM_", env_file=".env", extra="ignore")

    app_name: str = "AffirmGate"
    log_level: str = "info"
    host: str = "127.0.0.1"
    port: int = 3001

    provider: str = "openai"  # openai | gemini | gateway
    upstream_api_key: str = ""
    # 留空时按 provider 取 PROVIDER_DEFAULTS
    upstream_base_url: str = ""
    upstream_model: str = ""
    upstream_max_tokens: int | None = None
    upstream_temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    upstream_timeout_ms: int = Field(default=30_000, gt=0)
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20
    upstream_referer: str = "https://kind-affirmations.app"
    upstream_title: str = "Kind Affirmations"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    min_message_length: int = Field(default=3, ge=1)
    max_message_length: int = Field(default=1000, ge=1)
    # 单条无法解析的 data 负载最多累积的字节数，超过即按畸形行丢弃
    stream_max_pending_bytes: int = 65_536

    cors_allow_origins: str = "*"

    @model_validator(mode="after")
    def check_message_bounds(self) -> "Settings":
        if self.min_message_length > self.max_message_length:
            raise ValueError(
                f"min_message_length ({self.min_message_length}) exceeds max_message_length ({self.max_message_length})"
            )
        return self


settings = Settings()


@dataclass(frozen=True, slots=True)
class UpstreamCallConfig:
    """Immutable per-process view of everything the upstream call needs."""

    provider: str
    endpoint: str
    api_key: str
    model: str
    system_prompt: str
    timeout_ms: int
    max_tokens: int | None = None
    temperature: float | None = None
    referer: str = ""
    title: str = ""
    max_pending_bytes: int = 65_536

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


def build_upstream_config(source: Settings | None = None) -> UpstreamCallConfig:
    current = source or settings
    provider = current.provider.strip().lower()
    if provider not in PROVIDER_DEFAULTS:
        raise ValueError(f"unsupported_provider: {current.provider}")
    default_base, default_model = PROVIDER_DEFAULTS[provider]
    return UpstreamCallConfig(
        provider=provider,
        endpoint=(current.upstream_base_url.strip() or default_base).rstrip("/"),
        api_key=current.upstream_api_key.strip(),
        model=current.upstream_model.strip() or default_model,
        system_prompt=current.system_prompt,
        timeout_ms=current.upstream_timeout_ms,
        max_tokens=current.upstream_max_tokens,
        temperature=current.upstream_temperature,
        referer=current.upstream_referer.strip(),
        title=current.upstream_title.strip(),
        max_pending_bytes=current.stream_max_pending_bytes,
    )


def cors_origins(source: Settings | None = None) -> list[str]:
    raw = (source or settings).cors_allow_origins.strip()
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]

from __future__ import annotations

import re
from typing import Final, Iterable

from switchboard.core.balancer.types import ProviderKind
from switchboard.modules.routing.schemas import ModelOption

_PRIMARY_MODELS: Final[tuple[tuple[str, str], ...]] = (
    ("claude-opus-4-5-thinking", "Claude Opus 4.5 (Thinking)"),
    ("claude-sonnet-4-5", "Claude Sonnet 4.5"),
    ("claude-sonnet-4-5-thinking", "Claude Sonnet 4.5 (Thinking)"),
    ("claude-haiku-4-5", "Claude Haiku 4.5"),
    ("claude-haiku-4-5-thinking", "Claude Haiku 4.5 (Thinking)"),
    ("claude-opus-4", "Claude Opus 4"),
    ("claude-opus-4-thinking", "Claude Opus 4 (Thinking)"),
    ("claude-sonnet-4", "Claude Sonnet 4"),
    ("claude-sonnet-4-thinking", "Claude Sonnet 4 (Thinking)"),
    ("gemini-3-pro-high", "Gemini 3 Pro (High)"),
    ("gemini-3-pro-low", "Gemini 3 Pro (Low)"),
    ("gemini-3-pro", "Gemini 3 Pro"),
    ("gemini-3-flash", "Gemini 3 Flash"),
    ("gemini-2.5-pro", "Gemini 2.5 Pro"),
    ("gemini-2.5-flash", "Gemini 2.5 Flash"),
    ("gemini-2.5-flash-thinking", "Gemini 2.5 Flash (Thinking)"),
    ("gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite"),
    ("gpt-oss-120b", "GPT-OSS 120B (Medium)"),
)

_CODEX_MODELS: Final[tuple[tuple[str, str], ...]] = (
    ("gpt-5.3-max-high", "Codex - 5.3 Max (High)"),
    ("gpt-5.3-max", "Codex - 5.3 Max"),
    ("gpt-5.3", "Codex - 5.3"),
    ("gpt-5.3-codex", "Codex - 5.3 Codex"),
    ("gpt-5.2-max-high", "Codex - 5.2 Max (High)"),
    ("gpt-5.2-max", "Codex - 5.2 Max"),
    ("gpt-5.2", "Codex - 5.2"),
    ("gpt-5.2-codex", "Codex - 5.2 Codex"),
    ("gpt-5.1", "Codex - 5.1"),
    ("gpt-5.1-codex", "Codex - 5.1 Codex"),
    ("gpt-5.1-codex-max", "Codex - 5.1 Codex Max"),
    ("gpt-5.1-codex-mini", "Codex - 5.1 Codex Mini"),
    ("gpt-5", "Codex - 5"),
    ("gpt-5-codex", "Codex - 5 Codex"),
    ("gpt-5-codex-mini", "Codex - 5 Codex Mini"),
)

_CODEX_HIDDEN_MODELS: Final[frozenset[str]] = frozenset(
    {"gpt-5.3-max-high", "gpt-5.3-max", "gpt-5.2-max-high", "gpt-5.2-max"}
)

_COPILOT_STATIC_MODELS: Final[tuple[tuple[str, str], ...]] = (
    ("claude-opus-4-5-thinking", "Copilot - Opus 4.5 Thinking"),
    ("claude-sonnet-4-5", "Copilot - Sonnet 4.5"),
    ("claude-sonnet-4-5-thinking", "Copilot - Sonnet 4.5 Thinking"),
    ("gpt-4o", "Copilot - GPT-4o"),
    ("gpt-4o-mini", "Copilot - GPT-4o Mini"),
    ("gpt-4.1", "Copilot - GPT-4.1"),
    ("gpt-4.1-mini", "Copilot - GPT-4.1 Mini"),
)

MODEL_ALIASES: Final[dict[str, str]] = {
    "claude-sonnet-4-5-20250929": "claude-sonnet-4-5-thinking",
    "claude-haiku-4-5-20251001": "claude-haiku-4-5",
    "claude-opus-4-5-20251101": "claude-opus-4-5-thinking",
    "claude-3-5-sonnet-20241022": "claude-sonnet-4-5",
    "claude-3-5-sonnet-20240620": "claude-sonnet-4-5",
    "claude-3-haiku-20240307": "claude-haiku-4-5",
    "claude-opus-4": "claude-opus-4-5-thinking",
    "claude-haiku-4": "claude-haiku-4-5",
}

_DATE_SUFFIX_RE: Final[re.Pattern[str]] = re.compile(r"^(claude-(?:sonnet|opus|haiku)-\d+-\d+)-\d{8}$")

_LABEL_PREFIX: Final[dict[ProviderKind, str]] = {
    ProviderKind.ANTIGRAVITY: "Antigravity",
    ProviderKind.CODEX: "Codex",
    ProviderKind.COPILOT: "Copilot",
}


def normalize_model_name(model: str) -> str:
    """Map client-facing aliases and date-suffixed Claude ids onto routing model ids."""
    alias = MODEL_ALIASES.get(model)
    if alias:
        return alias
    match = _DATE_SUFFIX_RE.match(model)
    if match:
        return match.group(1)
    return model


def _options(pairs: Iterable[tuple[str, str]]) -> list[ModelOption]:
    return [ModelOption(id=model_id, label=label) for model_id, label in pairs]


def _sanitize(models: Iterable[ModelOption], prefix: str) -> list[ModelOption]:
    deduped: dict[str, ModelOption] = {}
    for model in models:
        model_id = model.id.strip()
        if not model_id or model_id in deduped:
            continue
        label = model.label.strip() or f"{prefix} - {model_id}"
        deduped[model_id] = ModelOption(id=model_id, label=label)
    return list(deduped.values())


class ModelCatalog:
    """Models each provider kind can serve, with dynamic overrides discovered at runtime."""

    def __init__(self) -> None:
        self._dynamic: dict[ProviderKind, list[ModelOption]] = {}

    def set_dynamic_models(self, provider: ProviderKind, models: Iterable[ModelOption]) -> None:
        sanitized = _sanitize(models, _LABEL_PREFIX[provider])
        if provider == ProviderKind.CODEX:
            sanitized = [model for model in sanitized if model.id not in _CODEX_HIDDEN_MODELS]
        self._dynamic[provider] = sanitized

    def clear_dynamic_models(self, provider: ProviderKind | None = None) -> None:
        if provider is None:
            self._dynamic.clear()
        else:
            self._dynamic.pop(provider, None)

    def provider_models(self, provider: ProviderKind) -> list[ModelOption]:
        match provider:
            case ProviderKind.ANTIGRAVITY:
                return _options(_PRIMARY_MODELS)
            case ProviderKind.COPILOT:
                merged: dict[str, ModelOption] = {}
                for model in [*self._dynamic.get(provider, []), *_options(_COPILOT_STATIC_MODELS)]:
                    merged.setdefault(model.id, model)
                return list(merged.values())
            case ProviderKind.CODEX:
                dynamic = self._dynamic.get(provider)
                if dynamic:
                    return list(dynamic)
                return [model for model in _options(_CODEX_MODELS) if model.id not in _CODEX_HIDDEN_MODELS]

    def all_models(self) -> dict[str, list[ModelOption]]:
        return {kind.value: self.provider_models(kind) for kind in ProviderKind}

    def serves(self, provider: ProviderKind, model_id: str) -> bool:
        return any(model.id == model_id for model in self.provider_models(provider))

    def is_official_model(self, model_id: str) -> bool:
        return any(self.serves(kind, model_id) for kind in ProviderKind)

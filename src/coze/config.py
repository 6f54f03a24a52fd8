"""Configuration loading and dataclasses."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import yaml


@dataclass
class AppConfig:
    title: str = "Coze"
    host: str = "127.0.0.1"
    port: int = 7860
    concurrency_limit: int = 2
    poll_interval_ms: int = 50
    sampling_interval_ms: int = 50
    offline_mode: bool = False
    gpu_index: int | None = 0
    cache_dir: str = "~/.cache/coze"
    history_path: str = "~/.local/share/coze/history.jsonl"
    history_turns: int = 0
    stall_timeout_s: float = 300.0
    collect_metrics: bool = True
    log_level: str = "INFO"


@dataclass
class GenerationDefaults:
    mode: str = "careful"
    max_new_tokens: int = 2048
    temperature: float = 1.0
    top_p: float = 0.9
    top_k: int = 5
    repeat_penalty: float | None = None
    repeat_last_n: int | None = None
    seed: int | None = None
    max_context: int = 4096


@dataclass
class FuzzyConfig:
    gap_weight: float = 1.0
    exact_bonus: float = 1.0
    min_coverage: float = 0.6
    case_sensitive: bool = False
    limit: int = 20


@dataclass
class ModelSpec:
    key: str
    display_name: str
    repo_id: str | None = None
    revision: str | None = None
    local_path: str | None = None
    compression: str | None = None
    family_hint: str | None = None
    size_bytes: int | None = None


DEFAULT_MODELS = [
    ModelSpec(
        key="stablelm-2-zephyr-1_6b",
        display_name="StableLM 2 Zephyr 1.6B",
        repo_id="stabilityai/stablelm-2-zephyr-1_6b",
        compression="4bit",
        family_hint="stablelm",
        size_bytes=1029022272,
    ),
    ModelSpec(
        key="mistral-7b-instruct-v0.2",
        display_name="Mistral Instruct 7B (v0.2)",
        repo_id="mistralai/Mistral-7B-Instruct-v0.2",
        compression="4bit",
        family_hint="mistral",
        size_bytes=4140374304,
    ),
]


@dataclass
class RootConfig:
    app: AppConfig = field(default_factory=AppConfig)
    generation_defaults: GenerationDefaults = field(default_factory=GenerationDefaults)
    fuzzy: FuzzyConfig = field(default_factory=FuzzyConfig)
    models: list[ModelSpec] = field(default_factory=lambda: list(DEFAULT_MODELS))


def _get(data: dict[str, Any], key: str, default: Any) -> Any:
    return data.get(key, default) if isinstance(data, dict) else default


def _optional(value: Any, cast: Any) -> Any:
    return None if value is None else cast(value)


def load_config(path: str) -> RootConfig:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    app_raw = _get(raw, "app", {})
    gen_raw = _get(raw, "generation_defaults", {})
    fuzzy_raw = _get(raw, "fuzzy", {})
    models_raw = _get(raw, "models", None)

    app = AppConfig(
        title=_get(app_raw, "title", AppConfig.title),
        host=_get(app_raw, "host", AppConfig.host),
        port=int(_get(app_raw, "port", AppConfig.port)),
        concurrency_limit=int(_get(app_raw, "concurrency_limit", AppConfig.concurrency_limit)),
        poll_interval_ms=int(_get(app_raw, "poll_interval_ms", AppConfig.poll_interval_ms)),
        sampling_interval_ms=int(_get(app_raw, "sampling_interval_ms", AppConfig.sampling_interval_ms)),
        offline_mode=bool(_get(app_raw, "offline_mode", AppConfig.offline_mode)),
        gpu_index=_get(app_raw, "gpu_index", AppConfig.gpu_index),
        cache_dir=_get(app_raw, "cache_dir", AppConfig.cache_dir),
        history_path=_get(app_raw, "history_path", AppConfig.history_path),
        history_turns=int(_get(app_raw, "history_turns", AppConfig.history_turns)),
        stall_timeout_s=float(_get(app_raw, "stall_timeout_s", AppConfig.stall_timeout_s)),
        collect_metrics=bool(_get(app_raw, "collect_metrics", AppConfig.collect_metrics)),
        log_level=str(_get(app_raw, "log_level", AppConfig.log_level)).upper(),
    )

    gen = GenerationDefaults(
        mode=str(_get(gen_raw, "mode", GenerationDefaults.mode)).lower(),
        max_new_tokens=int(_get(gen_raw, "max_new_tokens", GenerationDefaults.max_new_tokens)),
        temperature=float(_get(gen_raw, "temperature", GenerationDefaults.temperature)),
        top_p=float(_get(gen_raw, "top_p", GenerationDefaults.top_p)),
        top_k=int(_get(gen_raw, "top_k", GenerationDefaults.top_k)),
        repeat_penalty=_optional(_get(gen_raw, "repeat_penalty", None), float),
        repeat_last_n=_optional(_get(gen_raw, "repeat_last_n", None), int),
        seed=_optional(_get(gen_raw, "seed", None), int),
        max_context=int(_get(gen_raw, "max_context", GenerationDefaults.max_context)),
    )

    fuzzy = FuzzyConfig(
        gap_weight=float(_get(fuzzy_raw, "gap_weight", FuzzyConfig.gap_weight)),
        exact_bonus=float(_get(fuzzy_raw, "exact_bonus", FuzzyConfig.exact_bonus)),
        min_coverage=float(_get(fuzzy_raw, "min_coverage", FuzzyConfig.min_coverage)),
        case_sensitive=bool(_get(fuzzy_raw, "case_sensitive", FuzzyConfig.case_sensitive)),
        limit=int(_get(fuzzy_raw, "limit", FuzzyConfig.limit)),
    )

    if isinstance(models_raw, list):
        models: list[ModelSpec] = []
        for item in models_raw:
            key = _get(item, "key", "")
            models.append(
                ModelSpec(
                    key=key,
                    display_name=_get(item, "display_name", key),
                    repo_id=_get(item, "repo_id", None),
                    revision=_get(item, "revision", None),
                    local_path=_get(item, "local_path", None),
                    compression=_get(item, "compression", None),
                    family_hint=_get(item, "family_hint", None),
                    size_bytes=_optional(_get(item, "size_bytes", None), int),
                )
            )
    else:
        models = list(DEFAULT_MODELS)

    return RootConfig(
        app=app,
        generation_defaults=gen,
        fuzzy=fuzzy,
        models=models,
    )

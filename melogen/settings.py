from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATA_DIR = "training-data"
FEW_SHOT_DATASET_FILENAME = "melody-training-dataset.json"
FEEDBACK_LOG_FILENAME = "melody-feedback-log.json"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}.") from exc


@dataclass(frozen=True)
class Settings:
    cache_ttl_seconds: float = 30 * 60
    max_concurrent_generations: int = 2
    min_request_interval_seconds: float = 2.0
    usage_soft_limit_tokens: int = 20_000
    usage_window_seconds: float = 24 * 60 * 60
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    # Zero keeps few-shot guidance switched off while the selection logic stays live.
    few_shot_examples: int = 0
    max_generation_attempts: int = 3
    quality_threshold: float = 70.0
    generator_url: str | None = None
    generator_model: str = "gemini-2.5-flash"
    generator_api_key: str | None = None
    generator_timeout_seconds: float = 60.0

    @property
    def few_shot_dataset_path(self) -> Path:
        return self.data_dir / FEW_SHOT_DATASET_FILENAME

    @property
    def feedback_log_path(self) -> Path:
        return self.data_dir / FEEDBACK_LOG_FILENAME

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            cache_ttl_seconds=_env_float("MELOGEN_CACHE_TTL_SECONDS", cls.cache_ttl_seconds),
            max_concurrent_generations=_env_int("MELOGEN_MAX_CONCURRENT", cls.max_concurrent_generations),
            min_request_interval_seconds=_env_float("MELOGEN_MIN_REQUEST_INTERVAL", cls.min_request_interval_seconds),
            usage_soft_limit_tokens=_env_int("MELOGEN_USAGE_LIMIT", cls.usage_soft_limit_tokens),
            usage_window_seconds=_env_float("MELOGEN_USAGE_WINDOW_SECONDS", cls.usage_window_seconds),
            data_dir=Path(os.getenv("MELOGEN_DATA_DIR", DEFAULT_DATA_DIR)),
            few_shot_examples=max(0, _env_int("MELOGEN_FEW_SHOT_EXAMPLES", cls.few_shot_examples)),
            max_generation_attempts=max(1, _env_int("MELOGEN_MAX_ATTEMPTS", cls.max_generation_attempts)),
            quality_threshold=_env_float("MELOGEN_QUALITY_THRESHOLD", cls.quality_threshold),
            generator_url=os.getenv("MELOGEN_GENERATOR_URL") or None,
            generator_model=os.getenv("MELOGEN_GENERATOR_MODEL", cls.generator_model),
            generator_api_key=os.getenv("MELOGEN_GENERATOR_API_KEY") or None,
            generator_timeout_seconds=_env_float("MELOGEN_GENERATOR_TIMEOUT", cls.generator_timeout_seconds),
        )

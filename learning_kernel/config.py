"""Environment-driven configuration for the learning kernel."""

import os
from functools import lru_cache
from typing import Dict, Mapping, Optional

from learning_kernel.models.config import LearningConfig

ENV_PREFIX = "LEARNING_"


def _split_csv(value: str) -> list:
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(environ: Optional[Mapping[str, str]] = None) -> LearningConfig:
    """
    Build a LearningConfig from ``LEARNING_*`` variables.

    ``LEARNING_MIN_RUNS_FOR_SESSION=20`` sets ``min_runs_for_session``.
    Unset variables keep the model defaults; bad values raise at startup.
    """
    env = os.environ if environ is None else environ
    overrides: Dict[str, object] = {}
    for field_name in LearningConfig.model_fields:
        raw = env.get(ENV_PREFIX + field_name.upper())
        if raw is None or raw == "":
            continue
        overrides[field_name] = _split_csv(raw) if field_name == "scorers" else raw
    return LearningConfig.model_validate(overrides)


@lru_cache(maxsize=1)
def get_config() -> LearningConfig:
    """Return the cached process-wide configuration."""
    return load_config()

"""Engine settings.

Settings are loaded once per run from ``vocab/reconcile.yaml`` (or the file
named by ``IMGRECON_CONFIG``) and passed explicitly to the parser, resolver
and builder. Nothing in the engine reads module-level mutable state.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ruamel.yaml import YAML

from reconcile.errors import ConfigError

ROOT = Path(__file__).resolve().parents[1]
VOCAB_DIR = ROOT / "vocab"
DEFAULT_CONFIG_PATH = VOCAB_DIR / "reconcile.yaml"
DEFAULT_SYNONYMS_PATH = VOCAB_DIR / "color_synonyms.yaml"


@dataclass(frozen=True)
class ReconcileConfig:
    # Prefix fallback window, tried from longest to shortest
    min_prefix_len: int = 5
    max_prefix_len: int = 7
    # Cap applied to every fallback bundle (PREFIX_ANY, EXACT without color match)
    max_bundle_images: int = 6
    page_size: int = 500
    max_retries: int = 3
    backoff_base: float = 1.0
    workers: int = 0
    allow_prefix_any: bool = True
    prefix_any_excluded_prefixes: Tuple[str, ...] = ()
    brand_prefixes: Tuple[str, ...] = ("HBSE", "FESE", "SBSE", "SESE")
    synonyms_path: str = str(DEFAULT_SYNONYMS_PATH)

    def __post_init__(self) -> None:
        if self.min_prefix_len < 1:
            raise ConfigError(f"min_prefix_len must be >= 1 (got {self.min_prefix_len})")
        if self.max_prefix_len < self.min_prefix_len:
            raise ConfigError(
                f"max_prefix_len ({self.max_prefix_len}) must be >= min_prefix_len ({self.min_prefix_len})"
            )
        if self.max_bundle_images < 1:
            raise ConfigError("max_bundle_images must be positive")
        if self.page_size < 1:
            raise ConfigError("page_size must be positive")
        if self.max_retries < 0 or self.backoff_base < 0:
            raise ConfigError("max_retries and backoff_base must not be negative")
        if self.workers < 0:
            raise ConfigError("workers must not be negative")

    def prefix_any_allowed_for(self, model_ref: str) -> bool:
        if not self.allow_prefix_any:
            return False
        mr = model_ref.upper()
        return not any(mr.startswith(p) for p in self.prefix_any_excluded_prefixes)

    def with_overrides(self, **overrides: Any) -> "ReconcileConfig":
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean) if clean else self


_TUPLE_FIELDS = {"prefix_any_excluded_prefixes", "brand_prefixes"}


def _coerce(data: Dict[str, Any], source: str) -> Dict[str, Any]:
    known = {f.name for f in fields(ReconcileConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"{source}: unknown settings {', '.join(unknown)}")
    out: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _TUPLE_FIELDS:
            out[key] = tuple(str(v).strip().upper() for v in (value or []) if str(v).strip())
        elif key == "synonyms_path":
            p = Path(str(value))
            out[key] = str(p if p.is_absolute() else (ROOT / p))
        else:
            out[key] = value
    return out


def load_config(path: Optional[str | Path] = None) -> ReconcileConfig:
    """Load settings from YAML. A missing default file yields built-in defaults."""
    explicit = path or os.environ.get("IMGRECON_CONFIG")
    cfg_path = Path(explicit) if explicit else DEFAULT_CONFIG_PATH
    if not cfg_path.is_file():
        if explicit:
            raise ConfigError(f"config file not found: {cfg_path}")
        return ReconcileConfig()
    yaml = YAML(typ="safe")
    try:
        with cfg_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f) or {}
    except Exception as e:
        raise ConfigError(f"failed to read {cfg_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{cfg_path}: expected a mapping at top level")
    try:
        return ReconcileConfig(**_coerce(data, str(cfg_path)))
    except TypeError as e:
        raise ConfigError(f"{cfg_path}: {e}") from e

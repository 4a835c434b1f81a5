"""
Runtime configuration for vulnintel.

Everything tunable lives here and is resolved once from the environment
(``.env`` is loaded through python-dotenv first). Components receive the
resulting ``Settings`` object explicitly; nothing mutates it afterwards.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from vulnintel import __version__
from vulnintel.core.errors import ConfigError

TIER_PRIMARY = "primary"
TIER_SECONDARY = "secondary"
TIER_ENRICHMENT = "enrichment"
TIERS = (TIER_PRIMARY, TIER_SECONDARY, TIER_ENRICHMENT)

# name -> (default tier, env var holding the credential)
SOURCE_DEFAULTS: Dict[str, Tuple[str, Optional[str]]] = {
    "nvd": (TIER_PRIMARY, "NVD_API_KEY"),
    "mitre": (TIER_SECONDARY, None),
    "cisa_kev": (TIER_ENRICHMENT, None),
    "exploitdb": (TIER_ENRICHMENT, None),
    "vuldb": (TIER_ENRICHMENT, None),
    "zdi": (TIER_ENRICHMENT, None),
    "sans_isc": (TIER_ENRICHMENT, None),
    "cert_cc": (TIER_ENRICHMENT, None),
    "otx": (TIER_ENRICHMENT, "ALIENVAULT_OTX_API_KEY"),
    "epss": (TIER_ENRICHMENT, None),
}

# Legacy enable-flag names kept for existing .env files
_SOURCE_FLAG_ALIASES: Dict[str, str] = {
    "mitre": "MITRE_API_ENABLED",
    "cisa_kev": "CISA_KEV_ENABLED",
    "exploitdb": "EXPLOIT_DB_ENABLED",
    "otx": "ALIENVAULT_OTX_ENABLED",
}

# name -> (key env vars in lookup order, extract model, synthesize model)
BACKEND_DEFAULTS: Dict[str, Tuple[Tuple[str, ...], str, str]] = {
    "openai": (("OPENAI_API_KEY",), "gpt-3.5-turbo", "gpt-4-turbo"),
    "claude": (
        ("CLAUDE_API_KEY", "ANTHROPIC_API_KEY"),
        "claude-3-haiku-20240307",
        "claude-3-opus-20240229",
    ),
    "gemini": (("GOOGLE_API_KEY", "GEMINI_API_KEY"), "gemini-2.0-flash", "gemini-2.0-pro"),
}


@dataclass(frozen=True)
class SourceSettings:
    name: str
    enabled: bool = True
    tier: str = TIER_ENRICHMENT
    api_key: Optional[str] = None
    timeout: float = 15.0


@dataclass(frozen=True)
class BackendSettings:
    name: str
    enabled: bool = True
    api_key: Optional[str] = None
    extract_model: str = ""
    synthesize_model: str = ""
    timeout: float = 120.0
    base_url: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class Settings:
    # HTTP client
    user_agent: str = f"vulnintel/{__version__} (vulnerability analyzer)"
    http_timeout: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_backoff_factor: float = 2.0
    retry_max_delay: float = 30.0
    retry_jitter: str = "full"
    http_rate_per_minute: int = 120

    # Response cache
    cache_enabled: bool = True
    cache_dir: str = ".cache"
    cache_ttl: float = 3600.0
    cache_redis_url: Optional[str] = None

    # Aggregation
    aggregator_deadline: float = 30.0
    max_concurrency: Optional[int] = None
    max_references: int = 10

    # Index / retrieval
    index_path: str = "data/vulnerability-index.json"
    retrieval_limit: int = 5
    index_days_back: int = 30
    index_min_cvss: float = 7.0

    # Generation
    backend_preference: Tuple[str, ...] = ("openai", "claude", "gemini")
    llm_temperature: float = 0.7
    llm_max_tokens: int = 4000

    # Collaborators
    output_dir: str = "output"
    metrics_dir: Optional[str] = None

    sources: Dict[str, SourceSettings] = field(default_factory=dict)
    backends: Dict[str, BackendSettings] = field(default_factory=dict)

    def source(self, name: str) -> SourceSettings:
        return self.sources.get(name) or SourceSettings(
            name=name, tier=SOURCE_DEFAULTS.get(name, (TIER_ENRICHMENT, None))[0]
        )

    def backend(self, name: str) -> BackendSettings:
        try:
            return self.backends[name]
        except KeyError:
            raise ConfigError(f"Unknown generation backend: {name}") from None

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)


# ────────────────────────────────────────────────────────────
#  Environment parsing helpers
# ────────────────────────────────────────────────────────────


def _flag(env: Mapping[str, str], name: str, default: bool = True) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _env_str(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _load_sources(env: Mapping[str, str], default_timeout: float) -> Dict[str, SourceSettings]:
    sources: Dict[str, SourceSettings] = {}
    for name, (tier, key_var) in SOURCE_DEFAULTS.items():
        prefix = name.upper()
        enabled = _flag(env, f"{prefix}_ENABLED", True)
        alias = _SOURCE_FLAG_ALIASES.get(name)
        if alias and alias in env:
            enabled = enabled and _flag(env, alias, True)
        tier_value = (_env_str(env, f"{prefix}_TIER", tier) or tier).lower()
        if tier_value not in TIERS:
            raise ConfigError(f"{prefix}_TIER must be one of {TIERS}, got {tier_value!r}")
        sources[name] = SourceSettings(
            name=name,
            enabled=enabled,
            tier=tier_value,
            api_key=_env_str(env, key_var) if key_var else None,
            timeout=_env_float(env, f"{prefix}_TIMEOUT_SEC", default_timeout),
        )
    return sources


def _load_backends(env: Mapping[str, str]) -> Dict[str, BackendSettings]:
    backends: Dict[str, BackendSettings] = {}
    for name, (key_vars, extract_model, synth_model) in BACKEND_DEFAULTS.items():
        prefix = name.upper()
        api_key = None
        for var in key_vars:
            api_key = _env_str(env, var)
            if api_key:
                break
        backends[name] = BackendSettings(
            name=name,
            enabled=_flag(env, f"{prefix}_ENABLED", True),
            api_key=api_key,
            extract_model=_env_str(env, f"{prefix}_EXTRACT_MODEL", extract_model) or extract_model,
            synthesize_model=_env_str(env, f"{prefix}_SYNTHESIZE_MODEL", synth_model) or synth_model,
            timeout=_env_float(env, f"{prefix}_TIMEOUT_SEC", 120.0),
            base_url=_env_str(env, f"{prefix}_BASE_URL"),
        )
    return backends


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build a ``Settings`` from a mapping (defaults to ``os.environ``)."""
    env = os.environ if env is None else env

    source_timeout = _env_float(env, "SOURCE_TIMEOUT_SEC", 15.0)
    backends = _load_backends(env)

    preference_raw = _env_str(env, "LLM_BACKENDS", "openai,claude,gemini") or ""
    preference = tuple(p.strip().lower() for p in preference_raw.split(",") if p.strip())
    unknown = [p for p in preference if p not in backends]
    if unknown:
        raise ConfigError(f"LLM_BACKENDS lists unknown backends: {', '.join(unknown)}")
    if not preference:
        raise ConfigError("LLM_BACKENDS must name at least one backend")

    jitter = (_env_str(env, "API_RETRY_JITTER", "full") or "full").lower()
    if jitter not in {"full", "equal", "none"}:
        raise ConfigError(f"API_RETRY_JITTER must be full, equal or none, got {jitter!r}")

    return Settings(
        http_timeout=_env_float(env, "HTTP_TIMEOUT_SEC", 10.0),
        max_retries=max(0, _env_int(env, "API_FETCH_RETRIES", 3)),
        retry_base_delay=_env_float(env, "API_RETRY_BASE_DELAY", 1.0),
        retry_backoff_factor=_env_float(env, "API_RETRY_BACKOFF_FACTOR", 2.0),
        retry_max_delay=_env_float(env, "API_RETRY_MAX_DELAY", 30.0),
        retry_jitter=jitter,
        http_rate_per_minute=max(1, _env_int(env, "HTTP_RATE_PER_MINUTE", 120)),
        cache_enabled=_flag(env, "CACHE_ENABLED", True),
        cache_dir=_env_str(env, "CACHE_DIR", ".cache") or ".cache",
        cache_ttl=_env_float(env, "CACHE_TTL_SECONDS", 3600.0),
        cache_redis_url=_env_str(env, "CACHE_REDIS_URL"),
        aggregator_deadline=_env_float(env, "AGGREGATOR_DEADLINE_SEC", 30.0),
        max_concurrency=max(0, _env_int(env, "AGGREGATOR_MAX_CONCURRENCY", 0)) or None,
        max_references=max(1, _env_int(env, "MAX_REFERENCES", 10)),
        index_path=_env_str(env, "INDEX_PATH", "data/vulnerability-index.json")
        or "data/vulnerability-index.json",
        retrieval_limit=max(1, _env_int(env, "RETRIEVAL_LIMIT", 5)),
        index_days_back=_env_int(env, "INDEX_DAYS_BACK", 30),
        index_min_cvss=_env_float(env, "INDEX_MIN_CVSS", 7.0),
        backend_preference=preference,
        llm_temperature=_env_float(env, "LLM_TEMPERATURE", 0.7),
        llm_max_tokens=_env_int(env, "LLM_MAX_TOKENS", 4000),
        output_dir=_env_str(env, "OUTPUT_DIR", "output") or "output",
        metrics_dir=_env_str(env, "METRICS_DIR"),
        sources=_load_sources(env, source_timeout),
        backends=backends,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, resolved once after loading ``.env``."""
    load_dotenv()
    return load_settings()

"""
Configuration loader: YAML + .env + env overrides.
No hardcoded model names outside the defaults below; everything can be set from config.yaml.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from core.exceptions import ConfigError
from core.models import ConsensusStrategy, KnownClient, WhitelistEntry, WhitelistKind

DEFAULT_ACCOUNTS: tuple[str, ...] = (
    "24500020949",
    "24500020950",
    "001305000001000169513",
    "425832797",
    "24500081160",
    "24552844602",
)
DEFAULT_CONVENIOS: tuple[str, ...] = ("1352327", "1192509", "56885", "73180", "18129", "14311", "3278", "29140")
DEFAULT_COMMON_REFERENCES: tuple[str, ...] = ("10813353", "13937684")

DEFAULT_KNOWN_CLIENTS: tuple[KnownClient, ...] = (
    KnownClient(
        name="Cervecería Unión",
        code="10813353",
        convenios=("32137", "56885", "1709", "18129"),
        keywords=("cerveceria union", "cervunion", "rin cerveceria", "ceo 1709"),
    ),
)

_PROVIDER_DEFAULTS: dict[str, tuple[str, str]] = {
    "openai": ("https://api.openai.com/v1", "gpt-4o-mini"),
    "gemini": ("https://generativelanguage.googleapis.com/v1beta", "gemini-2.5-flash"),
    "ollama": ("http://localhost:11434/v1", "llava"),
}


def _coerce_bool(s: Any) -> bool:
    if isinstance(s, bool):
        return s
    return (str(s).strip().lower() in ("1", "true", "yes")) if s else False


def _coerce_float(s: Any, key: str = "") -> float:
    if s is None or s == "":
        return 0.0
    try:
        return float(s)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid number for {key or 'config value'}: {s!r}") from e


def _coerce_int(s: Any, key: str = "") -> int:
    if s is None or s == "":
        return 0
    try:
        return int(s)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid integer for {key or 'config value'}: {s!r}") from e


def _str_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, int)):
        value = [value]
    return tuple(str(v).strip() for v in value if str(v).strip())


@dataclass(frozen=True)
class ProviderConfig:
    """One model backend."""

    name: str = "openai"  # openai | gemini | ollama
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    max_retries: int = 3
    retry_delay_sec: float = 1.2
    timeout_sec: int = 60
    max_tokens: int = 2500

    def resolved(self) -> ProviderConfig:
        """Fill base_url/model from the provider's defaults when unset."""
        base_url, model = _PROVIDER_DEFAULTS.get(self.name, ("", ""))
        return replace(self, base_url=self.base_url or base_url, model=self.model or model)


@dataclass(frozen=True)
class ConsensusConfig:
    strategy: str = ConsensusStrategy.TRIPLE_CHECK.value
    round_timeout_sec: float = 180.0
    max_training_examples: int = 10


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    cache_dir: str = ".cache/consensus"
    expiration_hours: float = 720.0


@dataclass(frozen=True)
class ValidationConfig:
    """Thresholds, whitelist and known partners for the validation engine and post-processor."""

    min_quality_score: int = 60
    amount_tolerance: int = 50
    relaxed_authorization: bool = True
    accounts: tuple[str, ...] = DEFAULT_ACCOUNTS
    convenios: tuple[str, ...] = DEFAULT_CONVENIOS
    common_references: tuple[str, ...] = DEFAULT_COMMON_REFERENCES
    known_clients: tuple[KnownClient, ...] = DEFAULT_KNOWN_CLIENTS

    @property
    def whitelist(self) -> list[WhitelistEntry]:
        return [WhitelistEntry(v, kind=WhitelistKind.ACCOUNT) for v in self.accounts] + [
            WhitelistEntry(v, kind=WhitelistKind.CONVENIO) for v in self.convenios
        ]


@dataclass(frozen=True)
class HistoryConfig:
    script_url: str = ""
    timeout_sec: int = 30
    account_holder: str = "Distribuidora La Paruma SAS"


@dataclass(frozen=True)
class AppConfig:
    """Immutable application configuration. Built from YAML + env."""

    input_root: str = "input"
    output_dir: str = "output"
    log_level: str = "INFO"
    max_workers: int = 1
    primary_provider: ProviderConfig = field(default_factory=ProviderConfig)
    secondary_provider: ProviderConfig | None = None
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)

    def with_overrides(self, **overrides: Any) -> AppConfig:
        """Return new config with replaced keys (top-level; nested sections replaced whole). None values are ignored."""
        known = set(self.__dataclass_fields__)
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {sorted(unknown)}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        cfg = replace(self, **changes)
        _check(cfg)
        return cfg


def _check(cfg: AppConfig) -> None:
    try:
        strategy = ConsensusStrategy(cfg.consensus.strategy)
    except ValueError as e:
        raise ConfigError(f"Unknown consensus strategy: {cfg.consensus.strategy!r}") from e
    for provider in (cfg.primary_provider, cfg.secondary_provider):
        if provider is not None and provider.name not in _PROVIDER_DEFAULTS:
            raise ConfigError(f"Unknown provider: {provider.name!r}")
    if strategy is ConsensusStrategy.DUAL_PROVIDER:
        if cfg.secondary_provider is None or cfg.secondary_provider.name == cfg.primary_provider.name:
            raise ConfigError("dual_provider strategy needs a secondary provider different from the primary")
    if not 0 <= cfg.validation.min_quality_score <= 100:
        raise ConfigError(f"min_quality_score must be within [0, 100], got {cfg.validation.min_quality_score}")
    if cfg.validation.amount_tolerance < 0:
        raise ConfigError(f"amount_tolerance must be >= 0, got {cfg.validation.amount_tolerance}")
    if cfg.cache.expiration_hours <= 0:
        raise ConfigError(f"cache expiration_hours must be > 0, got {cfg.cache.expiration_hours}")
    if cfg.max_workers < 1:
        raise ConfigError(f"max_workers must be >= 1, got {cfg.max_workers}")


def _env_override(key: str, default: Any, coerce: type | Any = str) -> Any:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    if coerce is bool:
        return _coerce_bool(raw)
    if coerce is float:
        return _coerce_float(raw, key)
    if coerce is int:
        return _coerce_int(raw, key)
    return str(raw).strip()


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def _provider_from_dict(data: Any) -> ProviderConfig | None:
    if not data:
        return None
    if isinstance(data, str):
        data = {"name": data}
    return ProviderConfig(
        name=str(data.get("name", "openai")).strip().lower(),
        base_url=str(data.get("base_url", "")),
        api_key=str(data.get("api_key", "")),
        model=str(data.get("model", "")),
        max_retries=_coerce_int(data.get("max_retries", 3), "max_retries"),
        retry_delay_sec=_coerce_float(data.get("retry_delay_sec", 1.2), "retry_delay_sec"),
        timeout_sec=_coerce_int(data.get("timeout_sec", 60), "timeout_sec"),
        max_tokens=_coerce_int(data.get("max_tokens", 2500), "max_tokens"),
    )


def _known_clients_from_list(items: Any) -> tuple[KnownClient, ...]:
    if items is None:
        return DEFAULT_KNOWN_CLIENTS
    clients = []
    for item in items:
        if not isinstance(item, dict) or not item.get("code"):
            raise ConfigError(f"Known client entries need a code: {item!r}")
        clients.append(
            KnownClient(
                name=str(item.get("name", item["code"])),
                code=str(item["code"]),
                convenios=_str_tuple(item.get("convenios")),
                keywords=tuple(k.lower() for k in _str_tuple(item.get("keywords"))),
                reference_aliases=_str_tuple(item.get("reference_aliases")),
            )
        )
    return tuple(clients)


def _config_from_dict(data: dict[str, Any]) -> AppConfig:
    """Build AppConfig from a nested dict. Env overrides applied in load_config."""
    cons = data.get("consensus") or {}
    cache = data.get("cache") or {}
    val = data.get("validation") or {}
    wl = val.get("whitelist") or {}
    hist = data.get("history") or {}
    return AppConfig(
        input_root=str(data.get("input_root", "input")),
        output_dir=str(data.get("output_dir", "output")),
        log_level=str(data.get("log_level", "INFO")),
        max_workers=_coerce_int(data.get("max_workers", 1), "max_workers"),
        primary_provider=_provider_from_dict(data.get("primary_provider")) or ProviderConfig(),
        secondary_provider=_provider_from_dict(data.get("secondary_provider")),
        consensus=ConsensusConfig(
            strategy=str(cons.get("strategy", ConsensusStrategy.TRIPLE_CHECK.value)).strip().lower(),
            round_timeout_sec=_coerce_float(cons.get("round_timeout_sec", 180.0), "round_timeout_sec"),
            max_training_examples=_coerce_int(cons.get("max_training_examples", 10), "max_training_examples"),
        ),
        cache=CacheConfig(
            enabled=_coerce_bool(cache.get("enabled", True)),
            cache_dir=str(cache.get("cache_dir", ".cache/consensus")),
            expiration_hours=_coerce_float(cache.get("expiration_hours", 720), "expiration_hours"),
        ),
        validation=ValidationConfig(
            min_quality_score=_coerce_int(val.get("min_quality_score", 60), "min_quality_score"),
            amount_tolerance=_coerce_int(val.get("amount_tolerance", 50), "amount_tolerance"),
            relaxed_authorization=_coerce_bool(val.get("relaxed_authorization", True)),
            accounts=_str_tuple(wl["accounts"]) if "accounts" in wl else DEFAULT_ACCOUNTS,
            convenios=_str_tuple(wl["convenios"]) if "convenios" in wl else DEFAULT_CONVENIOS,
            common_references=(
                _str_tuple(wl["common_references"]) if "common_references" in wl else DEFAULT_COMMON_REFERENCES
            ),
            known_clients=_known_clients_from_list(val.get("known_clients")),
        ),
        history=HistoryConfig(
            script_url=str(hist.get("script_url", "")),
            timeout_sec=_coerce_int(hist.get("timeout_sec", 30), "history timeout_sec"),
            account_holder=str(hist.get("account_holder", "Distribuidora La Paruma SAS")),
        ),
    )


def _api_key_env(provider: ProviderConfig) -> str:
    if provider.name == "openai":
        return _env_override("OPENAI_API_KEY", provider.api_key)
    if provider.name == "gemini":
        return _env_override("GEMINI_API_KEY", provider.api_key)
    return provider.api_key


def _provider_env(provider: ProviderConfig | None, name_env: str) -> ProviderConfig | None:
    name = os.getenv(name_env)
    if name:
        name = name.strip().lower()
        if provider is None or provider.name != name:
            provider = ProviderConfig(name=name)
    if provider is None:
        return None
    provider = replace(provider, api_key=_api_key_env(provider))
    if provider.name == "ollama":
        provider = replace(provider, base_url=_env_override("OLLAMA_BASE_URL", provider.base_url))
    return provider.resolved()


def load_config(config_path: str | Path | None = None, *, dotenv: bool = True) -> AppConfig:
    """
    Load config from YAML file, then apply env overrides (.env loaded first when present).
    Env vars: LOG_LEVEL, MAX_WORKERS, CONSENSUS_STRATEGY, PRIMARY_PROVIDER, SECONDARY_PROVIDER,
    OPENAI_API_KEY, GEMINI_API_KEY, OLLAMA_BASE_URL, CACHE_DIR, CACHE_EXPIRATION_HOURS,
    MIN_QUALITY_SCORE, AMOUNT_TOLERANCE, HISTORY_SCRIPT_URL.
    Raises ConfigError on invalid values.
    """
    if dotenv:
        load_dotenv(override=False)
    path = Path(config_path) if config_path else Path("config.yaml")
    cfg = _config_from_dict(_load_yaml(path))
    primary = _provider_env(cfg.primary_provider, "PRIMARY_PROVIDER") or ProviderConfig().resolved()
    secondary = _provider_env(cfg.secondary_provider, "SECONDARY_PROVIDER")
    # Nested sections are rebuilt whole (single source for deployment)
    return replace(
        cfg,
        log_level=_env_override("LOG_LEVEL", cfg.log_level).upper(),
        max_workers=_env_override("MAX_WORKERS", cfg.max_workers, int),
        primary_provider=primary,
        secondary_provider=secondary,
    ).with_overrides(
        consensus=replace(
            cfg.consensus,
            strategy=_env_override("CONSENSUS_STRATEGY", cfg.consensus.strategy).lower(),
        ),
        cache=replace(
            cfg.cache,
            cache_dir=_env_override("CACHE_DIR", cfg.cache.cache_dir),
            expiration_hours=_env_override("CACHE_EXPIRATION_HOURS", cfg.cache.expiration_hours, float),
        ),
        validation=replace(
            cfg.validation,
            min_quality_score=_env_override("MIN_QUALITY_SCORE", cfg.validation.min_quality_score, int),
            amount_tolerance=_env_override("AMOUNT_TOLERANCE", cfg.validation.amount_tolerance, int),
        ),
        history=replace(cfg.history, script_url=_env_override("HISTORY_SCRIPT_URL", cfg.history.script_url)),
    )

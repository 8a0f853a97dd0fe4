"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import Budget


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ProviderCreds:
    api_key: str = ""


@dataclass
class ProvidersConfig:
    anthropic: ProviderCreds = field(default_factory=ProviderCreds)
    openai: ProviderCreds = field(default_factory=ProviderCreds)
    deepseek: ProviderCreds = field(default_factory=ProviderCreds)
    glm: ProviderCreds = field(default_factory=ProviderCreds)


@dataclass
class ModelConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    timeout_sec: int = 120


@dataclass
class BudgetConfig:
    model_call_limit: int = 12
    tool_call_limit: int = 25
    max_retries: int = 2
    step_margin: int = 30
    min_step_ceiling: int = 0
    deadline_sec: float = 0.0


@dataclass
class BudgetsConfig:
    controller: BudgetConfig = field(default_factory=lambda: BudgetConfig(
        model_call_limit=15, tool_call_limit=30, min_step_ceiling=300,
    ))
    worker: BudgetConfig = field(default_factory=lambda: BudgetConfig(
        model_call_limit=12, tool_call_limit=25, min_step_ceiling=120,
        deadline_sec=90.0,
    ))


@dataclass
class DatabaseConfig:
    path: str = ".gitpulse/stats.db"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass
class Config:
    model: ModelConfig = field(default_factory=ModelConfig)
    budgets: BudgetsConfig = field(default_factory=BudgetsConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    project_root: str = ""

    def db_path(self) -> Path:
        path = Path(self.database.path)
        if self.database.path == ":memory:" or path.is_absolute():
            return path
        return Path(self.project_root) / path


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _build_budget(data: dict, default: BudgetConfig) -> BudgetConfig:
    return BudgetConfig(
        model_call_limit=int(data.get("model_call_limit", default.model_call_limit)),
        tool_call_limit=int(data.get("tool_call_limit", default.tool_call_limit)),
        max_retries=int(data.get("max_retries", default.max_retries)),
        step_margin=int(data.get("step_margin", default.step_margin)),
        min_step_ceiling=int(data.get("min_step_ceiling", default.min_step_ceiling)),
        deadline_sec=float(data.get("deadline_sec", default.deadline_sec)),
    )


def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    if "model" in data and isinstance(data["model"], dict):
        m = data["model"]
        cfg.model = ModelConfig(
            provider=m.get("provider", cfg.model.provider),
            model=m.get("model", cfg.model.model),
            max_tokens=m.get("max_tokens", cfg.model.max_tokens),
            timeout_sec=m.get("timeout_sec", cfg.model.timeout_sec),
        )

    if "budgets" in data and isinstance(data["budgets"], dict):
        b = data["budgets"]
        if isinstance(b.get("controller"), dict):
            cfg.budgets.controller = _build_budget(b["controller"], cfg.budgets.controller)
        if isinstance(b.get("worker"), dict):
            cfg.budgets.worker = _build_budget(b["worker"], cfg.budgets.worker)

    if "database" in data and isinstance(data["database"], dict):
        cfg.database = DatabaseConfig(
            path=data["database"].get("path", cfg.database.path),
        )

    if "logging" in data and isinstance(data["logging"], dict):
        lg = data["logging"]
        cfg.logging = LoggingConfig(
            level=lg.get("level", cfg.logging.level),
            file=lg.get("file", cfg.logging.file),
        )

    if "providers" in data and isinstance(data["providers"], dict):
        p = data["providers"]
        cfg.providers = ProvidersConfig(
            anthropic=ProviderCreds(api_key=(p.get("anthropic") or {}).get("api_key", "")),
            openai=ProviderCreds(api_key=(p.get("openai") or {}).get("api_key", "")),
            deepseek=ProviderCreds(api_key=(p.get("deepseek") or {}).get("api_key", "")),
            glm=ProviderCreds(api_key=(p.get("glm") or {}).get("api_key", "")),
        )

    return cfg


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "glm": "GLM_API_KEY",
}


def load_config(project_root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (API keys)
      2. .gitpulse/local.config.yaml
      3. .gitpulse/config.yaml
    """
    project_root = Path(project_root)
    gitpulse_dir = project_root / ".gitpulse"

    # Layer 1: base config
    base_path = gitpulse_dir / "config.yaml"
    base_data: dict = {}
    if base_path.exists():
        parsed = yaml.safe_load(base_path.read_text())
        if parsed is None:
            base_data = {}
        elif not isinstance(parsed, dict):
            raise ValueError(f"Invalid config.yaml: expected mapping, got {type(parsed).__name__}")
        else:
            base_data = parsed

    # Layer 2: local override
    local_path = gitpulse_dir / "local.config.yaml"
    local_data: dict = {}
    if local_path.exists():
        parsed = yaml.safe_load(local_path.read_text())
        if isinstance(parsed, dict):
            local_data = parsed

    merged = deep_merge(base_data, local_data)
    cfg = _dict_to_config(merged, str(project_root))

    # Layer 3: env vars override API keys (highest priority)
    for provider, env_name in _ENV_KEYS.items():
        value = os.environ.get(env_name)
        if value:
            getattr(cfg.providers, provider).api_key = value

    return cfg


def get_api_key(config: Config, provider: str) -> str:
    creds = getattr(config.providers, provider, None)
    return creds.api_key if creds else ""


def budget_from_config(section: BudgetConfig) -> Budget:
    return Budget(
        model_call_limit=section.model_call_limit,
        tool_call_limit=section.tool_call_limit,
        max_retries=section.max_retries,
        step_margin=section.step_margin,
        min_step_ceiling=section.min_step_ceiling,
        deadline_sec=section.deadline_sec,
    )

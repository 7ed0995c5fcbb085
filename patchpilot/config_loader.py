"""
Configuration loader for PATCHPILOT.
Merges defaults with per-repo .patchpilot/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class GatewayConfig(BaseModel):
    default_provider: str = "anthropic"
    max_requests: int = 100
    window_seconds: float = 60.0
    request_timeout_seconds: float = 120.0


class ProviderConfig(BaseModel):
    enabled: bool = True
    model: str = ""
    api_key_env: str | None = None
    base_url: str | None = None

    def api_key(self) -> str | None:
        if not self.api_key_env:
            return None
        return os.environ.get(self.api_key_env) or None


class ProvidersConfig(BaseModel):
    anthropic: ProviderConfig = Field(default_factory=lambda: ProviderConfig(
        model="claude-3-5-sonnet-20241022", api_key_env="ANTHROPIC_API_KEY",
    ))
    openai: ProviderConfig = Field(default_factory=lambda: ProviderConfig(
        model="gpt-4-turbo-preview", api_key_env="OPENAI_API_KEY",
    ))
    ollama: ProviderConfig = Field(default_factory=lambda: ProviderConfig(
        enabled=False, model="codellama", base_url="http://localhost:11434",
    ))


class AgentConfig(BaseModel):
    provider: str | None = None
    run_tests: bool = True
    test_command: str | None = None
    test_timeout_seconds: float = 30.0
    default_language: str = "python"


class PolicyConfig(BaseModel):
    max_auto_lines: int = 50


class ExecutorConfig(BaseModel):
    owner: str | None = None
    repo: str | None = None
    token_env: str = "GITHUB_TOKEN"
    api_url: str = "https://api.github.com"
    merge_delay_seconds: float = 5.0
    merge_method: str = "squash"
    mergeable_poll_attempts: int = 5
    mergeable_poll_interval_seconds: float = 2.0

    @property
    def configured(self) -> bool:
        return bool(self.owner and self.repo)

    def token(self) -> str | None:
        return os.environ.get(self.token_env) or None


class AuditConfig(BaseModel):
    log_file: str = ".patchpilot/logs/audit.jsonl"
    max_entries_in_memory: int = 1000


class PatchPilotConfig(BaseModel):
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    provider = os.environ.get("PATCHPILOT_DEFAULT_PROVIDER")
    if provider:
        overrides.setdefault("gateway", {})["default_provider"] = provider

    owner = os.environ.get("PATCHPILOT_GITHUB_OWNER")
    repo = os.environ.get("PATCHPILOT_GITHUB_REPO")
    if owner:
        overrides.setdefault("executor", {})["owner"] = owner
    if repo:
        overrides.setdefault("executor", {})["repo"] = repo

    ollama_url = os.environ.get("OLLAMA_BASE_URL")
    if ollama_url:
        overrides.setdefault("providers", {}).setdefault("ollama", {})["base_url"] = ollama_url

    return overrides


def load_config(repo_path: Path | None = None) -> PatchPilotConfig:
    """
    Load config by merging:
      1. Built-in defaults (patchpilot/config.yaml)
      2. Repo-level overrides (<repo>/.patchpilot/config.yaml)
      3. Environment variable overrides
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Repo overrides
    if repo_path:
        repo_config = repo_path / ".patchpilot" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides
    base = _deep_merge(base, _env_overrides())

    return PatchPilotConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GITHUB_TOKEN":      bool(os.environ.get("GITHUB_TOKEN")),
    }

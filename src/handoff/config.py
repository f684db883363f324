"""Configuration schema for the delegation core.

Configuration is loaded from .handoff.yml in the repository root.
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from .git_facts import SnapshotOptions
from .safety.safe_paths import safe_resolve
from .types import WorkerKind


class GitContextConfig(BaseModel):
    """Git fact extraction settings."""

    max_commits: int = Field(default=10, ge=1, le=10)
    diff_context_lines: int = Field(default=3, ge=0, le=100)
    include_untracked: bool = True
    sanitize_for_ai: bool = True
    fetch_timeout_seconds: float = Field(default=5.0, gt=0)

    def snapshot_options(self) -> SnapshotOptions:
        return SnapshotOptions(
            max_commits=self.max_commits,
            diff_context_lines=self.diff_context_lines,
            include_untracked=self.include_untracked,
            sanitize_for_ai=self.sanitize_for_ai,
            fetch_timeout_s=self.fetch_timeout_seconds,
        )


class DelegationConfig(BaseModel):
    """Worker dispatch settings."""

    worker_timeout_ms: int = Field(default=120_000, gt=0)
    enabled_workers: list[str] = Field(default_factory=lambda: [k.value for k in WorkerKind])

    @field_validator("enabled_workers")
    @classmethod
    def validate_enabled_workers(cls, v: list[str]) -> list[str]:
        known = {k.value for k in WorkerKind}
        unknown = [w for w in v if w not in known]
        if unknown:
            raise ValueError(f"Unknown worker kind(s): {unknown}. Must be among {sorted(known)}")
        return v


class GateConfig(BaseModel):
    """Confidence gate and research quota settings."""

    research_quota_limit: int = Field(default=5, ge=0)
    research_window_seconds: int = Field(default=3600, gt=0)
    # Seconds a resolved task id stays reserved; unset keeps it for the process lifetime.
    resolved_ttl_seconds: float | None = Field(default=None, gt=0)


class WorkerClientConfig(BaseModel):
    """Chat-completions client used by the default workers."""

    provider: str = "ollama"
    base_url: str = "http://localhost:11434/v1"
    model_id: str = "qwen2.5-coder:7b"
    max_concurrency: int = Field(default=5, ge=1)
    temperature: float = 0.2
    timeout_seconds: int = 120
    # Name of the environment variable holding a bearer token, if the endpoint needs one.
    api_key_env: str | None = "HANDOFF_WORKER_API_KEY"

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        valid_providers = {"ollama", "openai-compatible"}
        if v not in valid_providers:
            raise ValueError(f"Invalid provider: {v}. Must be one of {valid_providers}")
        return v


class WebhookApprovalConfig(BaseModel):
    """Webhook human channel configuration."""

    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: int = 300


class ApprovalConfig(BaseModel):
    webhook: WebhookApprovalConfig = Field(default_factory=WebhookApprovalConfig)


class AuditConfig(BaseModel):
    """Append-only decision log."""

    log_path: str = ".handoff/audit.jsonl"
    fsync: bool = False


class TelemetryConfig(BaseModel):
    """Telemetry and logging configuration."""

    enabled: bool = True
    log_path: str = ".handoff/telemetry.jsonl"


class HandoffConfig(BaseModel):
    """Complete delegation core configuration."""

    git: GitContextConfig = Field(default_factory=GitContextConfig)
    delegation: DelegationConfig = Field(default_factory=DelegationConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    worker_client: WorkerClientConfig = Field(default_factory=WorkerClientConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @classmethod
    def load_from_file(cls, config_path: Path | str) -> HandoffConfig:
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load_from_repo(cls, repo_path: Path | str) -> HandoffConfig:
        """Load configuration from repository's .handoff.yml."""
        config_path = Path(repo_path) / ".handoff.yml"

        if not config_path.exists():
            return cls()

        return cls.load_from_file(config_path)

    def audit_path(self, repo_path: Path | str) -> Path:
        """Audit log location, resolved inside the repository."""
        return safe_resolve(Path(repo_path), self.audit.log_path)

    def telemetry_path(self, repo_path: Path | str) -> Path:
        """Telemetry log location, resolved inside the repository."""
        return safe_resolve(Path(repo_path), self.telemetry.log_path)

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        # Git context overrides
        if v := os.getenv("HANDOFF_MAX_COMMITS"):
            self.git.max_commits = max(1, min(10, int(v)))
        if v := os.getenv("HANDOFF_DIFF_CONTEXT_LINES"):
            self.git.diff_context_lines = max(0, min(100, int(v)))
        if os.getenv("HANDOFF_NO_UNTRACKED") == "1":
            self.git.include_untracked = False
        if v := os.getenv("HANDOFF_FETCH_TIMEOUT_SECONDS"):
            self.git.fetch_timeout_seconds = float(v)

        # Delegation overrides
        if v := os.getenv("HANDOFF_WORKER_TIMEOUT_MS"):
            self.delegation.worker_timeout_ms = int(v)

        # Gate overrides
        if v := os.getenv("HANDOFF_RESEARCH_QUOTA_LIMIT"):
            self.gate.research_quota_limit = int(v)
        if v := os.getenv("HANDOFF_RESEARCH_WINDOW_SECONDS"):
            self.gate.research_window_seconds = int(v)

        # Worker client overrides
        if url := os.getenv("HANDOFF_WORKER_BASE_URL"):
            self.worker_client.base_url = url
        if model := os.getenv("HANDOFF_WORKER_MODEL"):
            self.worker_client.model_id = model
        if temp := os.getenv("HANDOFF_WORKER_TEMPERATURE"):
            self.worker_client.temperature = float(temp)

        # Approval overrides
        if webhook_url := os.getenv("HANDOFF_APPROVAL_WEBHOOK_URL"):
            self.approval.webhook.url = webhook_url
        if webhook_timeout := os.getenv("HANDOFF_APPROVAL_WEBHOOK_TIMEOUT_SECONDS"):
            self.approval.webhook.timeout_seconds = int(webhook_timeout)

        # Audit and telemetry overrides
        if log_path := os.getenv("HANDOFF_AUDIT_PATH"):
            self.audit.log_path = log_path
        if os.getenv("HANDOFF_AUDIT_FSYNC") == "1":
            self.audit.fsync = True
        if log_path := os.getenv("HANDOFF_TELEMETRY_PATH"):
            self.telemetry.log_path = log_path
        if os.getenv("HANDOFF_TELEMETRY_DISABLED") == "1":
            self.telemetry.enabled = False


def load_config(repo_path: Path | str) -> HandoffConfig:
    """
    Load configuration for a repository.

    Args:
        repo_path: Path to the repository

    Returns:
        Loaded and validated configuration
    """
    config = HandoffConfig.load_from_repo(repo_path)
    config.apply_env_overrides()
    return config

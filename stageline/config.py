from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    APPROVER_ROLE_TIMEOUTS,
    DEFAULT_APPROVAL_TIMEOUT_HOURS,
    DEFAULT_INBOUND_TOPIC,
    ENTITY_CREATED_EVENT,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "stageline"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    inbound_topic: str = DEFAULT_INBOUND_TOPIC


class LeadServiceConfig(BaseModel):
    """Where the lead and document services live."""

    base_url: Optional[str] = None
    document_service_url: Optional[str] = None
    service_key: Optional[str] = None
    timeout_seconds: float = 10.0


class OrchestratorConfig(BaseModel):
    """Tuning knobs for event processing."""

    entity_created_event: str = ENTITY_CREATED_EVENT
    max_chain_steps: int = 50
    max_conflict_retries: int = 3
    conflict_backoff_base: float = 0.05


class StagelineConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    lead_service: LeadServiceConfig = LeadServiceConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    approver_timeouts: Dict[str, float] = Field(
        default_factory=lambda: dict(APPROVER_ROLE_TIMEOUTS)
    )
    default_approval_timeout_hours: float = DEFAULT_APPROVAL_TIMEOUT_HOURS
    database_url: Optional[str] = None

    def approver_timeout(self, role: str) -> float:
        """Default timeout in hours for ``role``."""
        return self.approver_timeouts.get(role, self.default_approval_timeout_hours)


def load_config(path: Optional[str] = None) -> StagelineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STAGELINE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STAGELINE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        roles = data.get("approver_timeouts")
        if roles:
            # configured roles extend the built-in table
            data["approver_timeouts"] = {**APPROVER_ROLE_TIMEOUTS, **roles}
        config = StagelineConfig(**data)
    else:
        config = StagelineConfig()

    env_db_url = os.getenv("STAGELINE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_lead_url = os.getenv("STAGELINE_LEAD_SERVICE_URL")
    if env_lead_url:
        config.lead_service.base_url = env_lead_url
    env_service_key = os.getenv("STAGELINE_SERVICE_KEY")
    if env_service_key:
        config.lead_service.service_key = env_service_key
    return config

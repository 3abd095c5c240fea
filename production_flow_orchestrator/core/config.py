"""
Configuration for Production Flow Orchestrator

Settings are pydantic models loaded from YAML with environment overrides.
Step catalogues are loaded from YAML and validated into ``StepGraph``s at
load time so a broken step table never reaches the shop floor.
"""

import os
from pathlib import Path
from typing import Optional, Dict, Any, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError
from ..models.steps import StepGraph

DEFAULT_SERIAL_PREFIXES = {
    "SENSOR": "Q",
    "MLA": "W",
    "HMI": "X",
    "TRANSMITTER": "T",
}


class DispatcherConfig(BaseModel):
    """Outgoing webhook dispatcher settings."""

    workers: int = Field(default=4, ge=1)
    queue_size: int = Field(default=1000, ge=0)
    default_timeout_seconds: float = Field(default=10.0, gt=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.2, ge=0, le=1)
    max_retry_after: float = Field(default=120.0, ge=0)
    health_failure_threshold: int = Field(default=5, ge=1)
    allow_private_urls: bool = False
    response_body_limit: int = Field(default=2000, ge=0)
    user_agent: str = "ProductionFlow-Webhook/1.0"


class AutomationConfig(BaseModel):
    """Automation rule engine settings."""

    max_concurrent_actions: int = Field(default=1, ge=1)
    action_timeout_seconds: float = Field(default=30.0, gt=0)
    default_product_type: str = "SDM_ECO"
    default_serial_prefix: str = "S"
    serial_prefixes: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_SERIAL_PREFIXES))

    def serial_prefix_for(self, product_type: str) -> str:
        return self.serial_prefixes.get(product_type, self.default_serial_prefix)


class OrchestratorConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    pool_size: int = Field(default=10, ge=1)
    log_level: str = "INFO"
    structured_logging: bool = True
    log_file: Optional[str] = None
    step_catalog: Optional[str] = None
    idempotency_cache_size: int = Field(default=1024, ge=0)
    event_queue_size: int = Field(default=0, ge=0)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)


def load_config(path: Optional[str] = None) -> OrchestratorConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the PFO_CONFIG env
            variable or 'pfo.yaml' in the current directory.
    """
    config_path = path or os.getenv("PFO_CONFIG", "pfo.yaml")
    data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(config_path, f"invalid YAML: {e}")
    elif path:
        raise ConfigurationError(path, "configuration file not found")

    try:
        config = OrchestratorConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(config_path, str(e))

    env_db_url = os.getenv("PFO_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    env_log_level = os.getenv("PFO_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()

    return config


def parse_step_catalog(data: Any, source: str = "<catalog>") -> Dict[str, StepGraph]:
    """Build validated step graphs from catalogue data.

    Accepts either ``{"product_types": {TYPE: [step, ...]}}`` or a bare
    ``{TYPE: [step, ...]}`` mapping.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(source, "step catalogue must be a mapping of product types")

    product_types = data.get("product_types", data)
    if not isinstance(product_types, dict) or not product_types:
        raise ConfigurationError(source, "step catalogue defines no product types")

    graphs: Dict[str, StepGraph] = {}
    for product_type, steps in product_types.items():
        if not isinstance(steps, list):
            raise ConfigurationError(str(product_type), "steps must be a list")
        graphs[str(product_type)] = StepGraph.from_dicts(str(product_type), steps)
    return graphs


def load_step_catalog(path: Union[str, Path]) -> Dict[str, StepGraph]:
    """Load and validate a YAML step catalogue."""
    catalog_path = Path(path)
    if not catalog_path.exists():
        raise ConfigurationError(str(path), "step catalogue not found")

    try:
        with catalog_path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(str(path), f"invalid YAML: {e}")

    return parse_step_catalog(data, source=str(path))

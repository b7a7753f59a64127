"""Configuration management for the cross-protocol orchestrator."""

import os
from pathlib import Path
from typing import Dict, Optional
import yaml
from pydantic import BaseModel, Field, model_validator


class CacheConfig(BaseModel):
    """Quote/route cache configuration."""
    quote_ttl_ms: int = 30_000
    route_ttl_ms: int = 60_000
    price_ttl_ms: int = 15_000
    gas_ttl_ms: int = 15_000
    enable_quote_cache: bool = True
    enable_route_cache: bool = True
    max_entries: int = 1024  # LRU drop beyond this

    @model_validator(mode="after")
    def _quote_ttl_below_route_ttl(self) -> "CacheConfig":
        if self.quote_ttl_ms >= self.route_ttl_ms:
            raise ValueError(
                f"quote_ttl_ms ({self.quote_ttl_ms}) must be smaller than route_ttl_ms ({self.route_ttl_ms})"
            )
        return self


class RouterConfig(BaseModel):
    """Router protocol (swap aggregator) configuration."""
    name: str = "router_a"
    api_url: str = "https://api.router.example/v1"
    # additional router deployments by name, used as arbitrage venues
    venues: Dict[str, str] = Field(default_factory=lambda: {"router_b": "https://api.router-b.example/v1"})
    timeout_ms: int = 10_000
    max_slippage_percent: float = 5.0
    default_slippage_percent: float = 1.0
    gas_limit_multiplier: float = 1.2
    min_gas_confidence: float = 0.5
    quote_token: str = "USDC"


class LendingConfig(BaseModel):
    """Lending protocol configuration."""
    api_url: str = "https://api.lending.example/v1"
    timeout_ms: int = 10_000
    min_health_factor: float = 1.0


class RetryPolicyConfig(BaseModel):
    """Override of the retry delay / bound for one error kind."""
    delay_ms: Optional[int] = None
    max_retries: Optional[int] = None


class RecoveryConfig(BaseModel):
    """Error recovery configuration."""
    policies: Dict[str, RetryPolicyConfig] = Field(default_factory=dict)
    history_per_user: int = 100
    help_base_url: str = "https://docs.crossproto.example/troubleshooting"
    retry_writes: bool = False  # state-changing calls are never replayed by default


class ArbitrageConfig(BaseModel):
    """Arbitrage detection configuration."""
    protocol_a: str = "router_a"
    protocol_b: str = "router_b"
    min_profit_threshold: float = 0.01
    gas_cost_fraction: float = 0.001
    max_risk_score: float = 0.7
    value_tolerance: float = 0.001  # 0.1% ledger reconciliation tolerance


class LeverageConfig(BaseModel):
    """Leverage operation configuration."""
    max_leverage_ratio: float = 5.0
    target_health_factor: float = 2.0
    health_factor_tolerance: float = 0.05
    slippage_buffer: float = 0.01


class RiskToleranceProfile(BaseModel):
    """Limits applied for one yield risk tolerance level."""
    max_source_risk: float
    max_reallocation: float


class YieldConfig(BaseModel):
    """Yield optimization configuration."""
    swap_cost_fraction: float = 0.003
    default_horizon_days: int = 30
    tolerances: Dict[str, RiskToleranceProfile] = Field(default_factory=lambda: {
        "low": RiskToleranceProfile(max_source_risk=0.3, max_reallocation=0.25),
        "medium": RiskToleranceProfile(max_source_risk=0.6, max_reallocation=0.5),
        "high": RiskToleranceProfile(max_source_risk=1.0, max_reallocation=1.0),
    })


class CoordinationConfig(BaseModel):
    """Multi-agent coordination configuration."""
    timeout_ms: int = 30_000
    mode: str = "parallel"
    max_rounds: int = 3
    consensus_variance_threshold: float = 0.1
    conflict_resolution: str = "consensus"


class ServiceConfig(BaseModel):
    """Operation surface configuration."""
    operation_timeout_ms: Optional[int] = 120_000  # deadline for requests that do not set one


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    log_file: Optional[str] = None
    json_format: bool = False


class Config(BaseModel):
    """Main configuration model."""
    cache: CacheConfig = Field(default_factory=CacheConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    lending: LendingConfig = Field(default_factory=LendingConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    arbitrage: ArbitrageConfig = Field(default_factory=ArbitrageConfig)
    leverage: LeverageConfig = Field(default_factory=LeverageConfig)
    yield_opt: YieldConfig = Field(default_factory=YieldConfig)
    coordination: CoordinationConfig = Field(default_factory=CoordinationConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def get_tolerance(self, level: str) -> RiskToleranceProfile:
        """Get the yield risk tolerance profile, defaulting to medium."""
        return self.yield_opt.tolerances.get(level, self.yield_opt.tolerances["medium"])

    @classmethod
    def load_from_file(cls, config_path: str = "config.yaml") -> "Config":
        """Load configuration from YAML file with environment variable substitution."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

        # Substitute environment variables
        config_str = yaml.dump(config_data)
        for key, value in os.environ.items():
            config_str = config_str.replace(f"${{{key}}}", value)

        config_data = yaml.safe_load(config_str) or {}
        return cls(**config_data)


def get_config(config_path: str = "config.yaml") -> Config:
    """Get configuration instance."""
    return Config.load_from_file(config_path)

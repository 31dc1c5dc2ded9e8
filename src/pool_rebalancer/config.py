"""Application settings: Pydantic-based configuration for the pool rebalancer.

All values live in this file or in a `.env` file.
Each parameter carries a short comment describing what it controls.
"""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global configuration for the pool rebalancer.

    Values are loaded from a `.env` file in the project root.
    Any field can be overridden by setting the corresponding environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Network & Gateway ---------------------------------------------------
    network: str = "mainnet-beta"  # "mainnet-beta" or "devnet"
    gateway_url: str = "http://127.0.0.1:8787"  # AMM gateway service (pool reads, swap submission)
    gateway_api_key: str = ""  # Sent as a bearer token when set
    gateway_timeout_sec: float = 30.0  # HTTP timeout for a single gateway request

    # --- Reconciliation Worker -----------------------------------------------
    check_interval_sec: float = 60.0  # Pause between the end of one sweep and the start of the next
    sweep_concurrency: int = 1  # Pools processed concurrently within one sweep (1 = sequential)
    pool_fetch_timeout_sec: float = 10.0  # Upper bound for one on-chain state fetch
    execution_timeout_sec: float = 60.0  # Upper bound for one swap incl. confirmation wait
    worker_autostart: bool = True  # Start the worker loop as soon as the process is up

    # --- Market-Maker Tick ---------------------------------------------------
    mm_enabled: bool = False  # Run the per-pool market-maker quote loop
    mm_tick_interval_sec: float = 15.0  # Independent of check_interval_sec

    # --- Dry-Run Mode --------------------------------------------------------
    dry_run: bool = True  # True = swaps are simulated, nothing is sent on-chain
    dry_run_price_impact: float = 0.001  # Simulated execution impact for dry-run fills

    # --- Strategy defaults (used when registering a pool) --------------------
    default_target_ratio: float = 0.5  # Fraction of position value held in token A
    default_rebalance_threshold: float = 0.05  # Relative deviation that triggers a trade
    default_min_trade_size: float = 0.1  # Token A units
    default_max_trade_size: float = 10.0  # Token A units
    default_max_slippage: float = 0.01  # Applied to min-received / max-spent bounds

    # --- Storage & Logging ---------------------------------------------------
    db_url: str = "sqlite+aiosqlite:///./pool_rebalancer.db"  # SQLAlchemy async URL
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    # --- WandB Logging -------------------------------------------------------
    wandb_enabled: bool = False  # Send sweep / trade metrics to Weights & Biases
    wandb_project: str = "pool-rebalancer"
    wandb_entity: str = ""
    wandb_api_key: str = ""  # Enables WandB automatically when set

    # --- Safety --------------------------------------------------------------
    emergency_stop: bool = False  # Global kill switch: stops the worker when it turns on

    @model_validator(mode="after")
    def _enable_wandb_if_key_present(self) -> Settings:
        if self.wandb_api_key and not self.wandb_enabled:
            self.wandb_enabled = True
        return self

    @model_validator(mode="after")
    def _check_worker_bounds(self) -> Settings:
        if self.check_interval_sec <= 0:
            raise ValueError("check_interval_sec must be positive")
        if self.mm_tick_interval_sec <= 0:
            raise ValueError("mm_tick_interval_sec must be positive")
        if self.sweep_concurrency < 1:
            raise ValueError("sweep_concurrency must be at least 1")
        return self

    @property
    def is_mainnet(self) -> bool:
        return self.network.lower() == "mainnet-beta"

"""Engine configuration."""

import json
import logging

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)
load_dotenv()


# level, condition, threshold
DEFAULT_KILL_SWITCH_RULES = [
    {"level": 3, "condition": "drawdown", "threshold": 0.14},
    {"level": 3, "condition": "daily_loss_pct", "threshold": 0.05},
    {"level": 3, "condition": "consecutive_losses", "threshold": 5},
    {"level": 2, "condition": "drawdown", "threshold": 0.12},
    {"level": 2, "condition": "daily_loss_pct", "threshold": 0.045},
    {"level": 2, "condition": "consecutive_losses", "threshold": 3},
    {"level": 1, "condition": "drawdown", "threshold": 0.08},
    {"level": 1, "condition": "daily_loss_pct", "threshold": 0.03},
    {"level": 1, "condition": "consecutive_losses", "threshold": 2},
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Session
    session_id: str = Field(default="default", alias="SESSION_ID")
    data_dir: str = Field(default="data", alias="DATA_DIR")
    logs_dir: str = Field(default="logs", alias="LOGS_DIR")
    watch_symbols: str = Field(default="EURUSD,GBPUSD,USDJPY,GOLD", alias="WATCH_SYMBOLS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Paper account
    paper_start_balance: float = Field(default=10000.0, alias="PAPER_START_BALANCE")
    base_position_size: float = Field(default=1.0, alias="BASE_POSITION_SIZE")

    # Risk
    max_drawdown: float = 0.14
    profit_cap_balance_pct: float = 0.4
    profit_cap_total_pct: float = 0.1
    daily_loss_limit_pct: float = 0.05
    max_open_positions: int = 10
    max_positions_per_symbol: int = 3
    max_trades_per_symbol_hour: int = 5
    min_position_size: float = 0.01
    max_position_size: float = 2.0
    position_loss_close_pct: float = 0.05
    position_profit_adjust_pct: float = 0.02
    trailing_trigger_pct: float = 0.02
    trailing_distance_pct: float = 0.01
    max_hold_hours: float = 24.0
    max_exposure_pct: float = 0.70
    kill_switch_rules_json: str = Field(default="", alias="KILL_SWITCH_RULES")

    # Cycle intervals (seconds)
    trading_interval: float = Field(default=30.0, alias="TRADING_INTERVAL")
    monitor_interval: float = Field(default=60.0, alias="MONITOR_INTERVAL")
    risk_interval: float = Field(default=120.0, alias="RISK_INTERVAL")
    kill_switch_interval: float = Field(default=30.0, alias="KILL_SWITCH_INTERVAL")
    retrain_check_interval: float = Field(default=21600.0, alias="RETRAIN_CHECK_INTERVAL")

    # Prediction
    prediction_cache_ttl: float = Field(default=60.0, alias="PREDICTION_CACHE_TTL")
    prediction_retries: int = Field(default=3, alias="PREDICTION_RETRIES")
    prediction_backoff: float = Field(default=1.0, alias="PREDICTION_BACKOFF")
    action_threshold: float = 0.6
    min_history: int = 20
    sequence_length: int = 60
    history_limit: int = 500
    max_sample_spread_pct: float = 0.05
    max_sample_age_seconds: float = 300.0

    # Rule cross-check multipliers (empirical, kept tunable)
    sequence_agree_boost: float = 1.15
    sequence_contradict_factor: float = 0.7
    attention_agree_boost: float = 1.2
    attention_contradict_factor: float = 0.65
    boosted_agree_boost: float = 1.15
    boosted_contradict_factor: float = 0.7
    rl_agree_boost: float = 1.2
    rl_contradict_factor: float = 0.65
    confidence_boost_cap: float = 0.95
    contradiction_hold_floor: float = 0.6

    # Ensemble
    sentiment_modifier: float = 0.2
    performance_window_days: int = 7

    # Training
    full_epochs: int = 100
    fine_tune_epochs: int = 30
    incremental_epochs: int = 20
    full_learning_rate: float = 0.001
    transfer_learning_rate: float = 0.0001
    early_stopping_patience: int = 10
    batch_size: int = 32
    max_samples_per_epoch: int = 100
    max_model_versions: int = 5
    promotion_tolerance: float = 0.05

    # Auto-retrain
    auto_retrain: bool = Field(default=True, alias="AUTO_RETRAIN")
    retrain_max_age_days: float = 7.0
    retrain_min_accuracy: float = 0.65
    retrain_min_win_rate: float = 0.45
    retrain_min_trades: int = 10
    retrain_max_drawdown: float = 0.15
    expected_accuracy: float = 0.80

    @property
    def symbols(self) -> list[str]:
        return [s.strip() for s in self.watch_symbols.split(",") if s.strip()]

    @property
    def kill_switch_rules(self) -> list[dict]:
        """Rule table from KILL_SWITCH_RULES (JSON list) or the defaults."""
        if not self.kill_switch_rules_json:
            return [dict(r) for r in DEFAULT_KILL_SWITCH_RULES]
        try:
            rules = json.loads(self.kill_switch_rules_json)
            if isinstance(rules, list) and rules:
                return rules
            logger.warning("[CONFIG] KILL_SWITCH_RULES is empty, using defaults")
        except json.JSONDecodeError as e:
            logger.warning("[CONFIG] Invalid KILL_SWITCH_RULES, using defaults: %s", e)
        return [dict(r) for r in DEFAULT_KILL_SWITCH_RULES]

    def confirmation_factors(self, model_type: str) -> tuple[float, float]:
        """(agreement boost, contradiction factor) for a model type."""
        prefix = {
            "lstm": "sequence",
            "transformer": "attention",
            "xgboost": "boosted",
            "rl": "rl",
        }.get(model_type, "sequence")
        return (
            getattr(self, f"{prefix}_agree_boost"),
            getattr(self, f"{prefix}_contradict_factor"),
        )

    def epochs_for(self, mode: str) -> int:
        return {
            "full": self.full_epochs,
            "fine_tune": self.fine_tune_epochs,
            "incremental": self.incremental_epochs,
        }.get(mode, self.full_epochs)

    def learning_rate_for(self, mode: str) -> float:
        return self.full_learning_rate if mode == "full" else self.transfer_learning_rate


settings = Settings()

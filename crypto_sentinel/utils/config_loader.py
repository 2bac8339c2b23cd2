"""
Configuration loader and manager
"""

import math
import os
import yaml
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, fields, asdict
import logging

logger = logging.getLogger(__name__)


class ConfigUpdateError(ValueError):
    """Raised when a remote configuration update is rejected"""


@dataclass
class ExchangeConfig:
    """Binance connection settings"""
    api_key: str = ""
    api_secret: str = ""
    testnet: bool = False
    recv_window: int = 5000
    timeout_seconds: float = 10.0


@dataclass
class LLMConfig:
    """Sentiment model settings"""
    provider: str = "gemini"
    gemini_key: str = ""
    model: str = "gemini-2.0-flash"
    timeout_seconds: float = 30.0
    news_items: int = 3


@dataclass
class NotificationConfig:
    """Discord webhook, chat command channel and control-surface admins"""
    discord_webhook_url: str = ""
    admin_user_ids: list = field(default_factory=list)
    timeout_seconds: float = 10.0
    bot_token: str = ""
    channel_id: str = ""
    command_poll_seconds: float = 5.0


@dataclass
class TradingConfig:
    """Trading universe"""
    base_currency: str = "USDT"
    pairs: list = field(default_factory=lambda: ["BTCUSDT", "ETHUSDT"])
    core_coins: list = field(default_factory=lambda: ["BTCUSDT", "ETHUSDT"])


@dataclass
class AllocationConfig:
    """Core/satellite split, must sum to 1.0"""
    core: float = 0.60
    satellite: float = 0.40


@dataclass
class RiskConfig:
    """Risk management configuration"""
    max_risk_per_trade: float = 0.01
    max_satellite_exposure: float = 0.25
    daily_loss_limit: float = 0.05
    default_stop_loss: float = 0.02
    default_take_profit: float = 0.04
    max_trades_per_day: int = 10
    min_order_size_usdt: float = 10.0
    max_open_satellite_trades: int = 2
    min_balance_to_trade: float = 15.0
    min_sentiment: int = 20


@dataclass
class ConfidenceConfig:
    """Sentiment confidence thresholds (0-100)"""
    min_to_trade: int = 60
    high_threshold: int = 85


@dataclass
class TechnicalsConfig:
    """Candidate filter thresholds"""
    min_volume_usdt: float = 100000.0
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    rsi_period: int = 14
    short_interval: str = "1h"
    short_candles: int = 50
    long_interval: str = "4h"
    long_candles: int = 30
    trend_rsi_ceiling: float = 65.0
    momentum_band_low: float = 45.0
    momentum_band_high: float = 60.0
    max_volatility: float = 0.05
    volatility_lookback: int = 3


@dataclass
class PaperConfig:
    """Paper trading (real market data, simulated fills)"""
    enabled: bool = False
    starting_balance: float = 1000.0


@dataclass
class LoopConfig:
    """Scheduler cadences"""
    scan_interval_seconds: float = 1800.0
    trailing_interval_seconds: float = 60.0
    heartbeat_interval_seconds: float = 300.0
    max_consecutive_errors: int = 5
    error_cooldown_seconds: float = 60.0
    shutdown_grace_seconds: float = 30.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = "logs/bot.log"
    dir: str = "logs"


@dataclass
class StateConfig:
    file: str = "data/daily_stats.json"


@dataclass
class SentinelConfig:
    """Full configuration snapshot"""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    trading: TradingConfig = field(default_factory=TradingConfig)
    allocation: AllocationConfig = field(default_factory=AllocationConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)
    technicals: TechnicalsConfig = field(default_factory=TechnicalsConfig)
    paper: PaperConfig = field(default_factory=PaperConfig)
    loops: LoopConfig = field(default_factory=LoopConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    state: StateConfig = field(default_factory=StateConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SettingSpec:
    """Type and domain of one remotely mutable setting"""
    section: str
    attr: str
    kind: type
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    min_exclusive: bool = False


# Keys accepted by the control surface. Everything else is read-only.
MUTABLE_SETTINGS: Dict[str, SettingSpec] = {
    "risk.maxRiskPerTrade": SettingSpec("risk", "max_risk_per_trade", float, 0.0, 1.0, True),
    "risk.maxSatelliteExposure": SettingSpec("risk", "max_satellite_exposure", float, 0.0, 1.0, True),
    "risk.dailyLossLimit": SettingSpec("risk", "daily_loss_limit", float, 0.0, 1.0, True),
    "risk.maxTradesPerDay": SettingSpec("risk", "max_trades_per_day", int, 1),
    "risk.minOrderSizeUsdt": SettingSpec("risk", "min_order_size_usdt", float, 0.0, None, True),
    "risk.maxOpenSatelliteTrades": SettingSpec("risk", "max_open_satellite_trades", int, 0),
    "risk.minBalanceToTrade": SettingSpec("risk", "min_balance_to_trade", float, 0.0),
    "risk.minSentiment": SettingSpec("risk", "min_sentiment", int, 0, 100),
    "risk.defaultStopLoss": SettingSpec("risk", "default_stop_loss", float, 0.0, 0.5, True),
    "risk.defaultTakeProfit": SettingSpec("risk", "default_take_profit", float, 0.0, 1.0, True),
    "confidence.minToTrade": SettingSpec("confidence", "min_to_trade", int, 0, 100),
    "confidence.highThreshold": SettingSpec("confidence", "high_threshold", int, 0, 100),
    "technicals.rsiOversold": SettingSpec("technicals", "rsi_oversold", float, 0.0, 100.0),
    "technicals.rsiOverbought": SettingSpec("technicals", "rsi_overbought", float, 0.0, 100.0),
    "technicals.minVolumeUsdt": SettingSpec("technicals", "min_volume_usdt", float, 0.0),
}

READ_ONLY_SETTINGS = {
    "allocation.core": ("allocation", "core"),
    "allocation.satellite": ("allocation", "satellite"),
}

# Environment fallbacks for secrets left empty in the YAML file
ENV_FALLBACKS = {
    ("exchange", "api_key"): "BINANCE_API_KEY",
    ("exchange", "api_secret"): "BINANCE_API_SECRET",
    ("llm", "gemini_key"): "GEMINI_API_KEY",
    ("notifications", "discord_webhook_url"): "DISCORD_WEBHOOK_URL",
    ("notifications", "bot_token"): "DISCORD_BOT_TOKEN",
    ("notifications", "channel_id"): "DISCORD_CHANNEL_ID",
}


def _parse_setting(key: str, spec: SettingSpec, value: Any):
    """Coerce a raw value into the setting's declared type, or reject it"""
    if isinstance(value, bool):
        raise ConfigUpdateError(f"{key} expects {spec.kind.__name__}, got boolean")

    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = spec.kind(text)
        except ValueError:
            raise ConfigUpdateError(f"{key} expects {spec.kind.__name__}, got {value!r}")
    elif isinstance(value, (int, float)):
        if spec.kind is int and float(value) != int(value):
            raise ConfigUpdateError(f"{key} expects an integer, got {value!r}")
        parsed = spec.kind(value)
    else:
        raise ConfigUpdateError(f"{key} expects {spec.kind.__name__}, got {type(value).__name__}")

    if spec.kind is float and not math.isfinite(parsed):
        raise ConfigUpdateError(f"{key} must be finite")

    if spec.minimum is not None:
        if spec.min_exclusive and parsed <= spec.minimum:
            raise ConfigUpdateError(f"{key} must be > {spec.minimum}, got {parsed}")
        if not spec.min_exclusive and parsed < spec.minimum:
            raise ConfigUpdateError(f"{key} must be >= {spec.minimum}, got {parsed}")
    if spec.maximum is not None and parsed > spec.maximum:
        raise ConfigUpdateError(f"{key} must be <= {spec.maximum}, got {parsed}")

    return parsed


class ConfigManager:
    """Loads the YAML configuration and owns the live snapshot"""

    SECTIONS = {f.name: f.type for f in fields(SentinelConfig)}

    def __init__(self, config_path: str = None):
        self.config_path = config_path or self._find_config()
        self._raw_config: Dict = {}
        self.config = SentinelConfig()
        self._load_config()

    def _find_config(self) -> str:
        """Find configuration file"""
        possible_paths = [
            "config/settings.yaml",
            "../config/settings.yaml",
            "settings.yaml",
            os.path.expanduser("~/.crypto_sentinel/settings.yaml")
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return "config/settings.yaml"

    def _load_config(self) -> None:
        """Load configuration from file"""
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, 'r') as f:
                    self._raw_config = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {self.config_path}")
            else:
                logger.warning(f"Config file not found: {self.config_path}, using defaults")
                self._raw_config = {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading config: {e}")
            self._raw_config = {}

        self.config = self._build(self._raw_config)
        self._apply_env_fallbacks()

    def _resolve_env_vars(self, value: Any) -> Any:
        """Resolve environment variables in config values"""
        if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
            env_var = value[2:-1]
            return os.getenv(env_var, "")
        return value

    def _build(self, raw: Dict) -> SentinelConfig:
        sections = {}
        for name, section_type in self.SECTIONS.items():
            section_cls = globals()[section_type] if isinstance(section_type, str) else section_type
            values = raw.get(name) or {}
            known = {f.name for f in fields(section_cls)}

            kwargs = {}
            for key, value in values.items():
                if key not in known:
                    logger.warning(f"Ignoring unknown config key: {name}.{key}")
                    continue
                kwargs[key] = self._resolve_env_vars(value)

            sections[name] = section_cls(**kwargs)

        return SentinelConfig(**sections)

    def _apply_env_fallbacks(self) -> None:
        for (section, attr), env_var in ENV_FALLBACKS.items():
            target = getattr(self.config, section)
            if not getattr(target, attr):
                setattr(target, attr, os.getenv(env_var, ""))

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when valid)"""
        cfg = self.config
        errors = []

        if not cfg.paper.enabled:
            if not cfg.exchange.api_key:
                errors.append("BINANCE_API_KEY is required for live trading")
            if not cfg.exchange.api_secret:
                errors.append("BINANCE_API_SECRET is required for live trading")

        if not cfg.llm.gemini_key:
            errors.append("GEMINI_API_KEY is required for sentiment analysis")

        if not math.isclose(cfg.allocation.core + cfg.allocation.satellite, 1.0):
            errors.append("Core + Satellite allocation must equal 1.0 (100%)")

        if cfg.confidence.min_to_trade > cfg.confidence.high_threshold:
            errors.append("confidence.min_to_trade must not exceed confidence.high_threshold")

        if not cfg.trading.pairs:
            errors.append("trading.pairs must list at least one pair")

        if bool(cfg.notifications.bot_token) != bool(cfg.notifications.channel_id):
            errors.append("DISCORD_BOT_TOKEN and DISCORD_CHANNEL_ID must be set together")

        return errors

    def update_setting(self, key: str, value: Any):
        """
        Apply a typed, validated update to one remotely mutable setting.

        Raises:
            ConfigUpdateError: unknown key, unparseable or out-of-domain value
        """
        if key in READ_ONLY_SETTINGS:
            raise ConfigUpdateError(f"{key} is read-only")

        spec = MUTABLE_SETTINGS.get(key)
        if spec is None:
            raise ConfigUpdateError(f"Unknown setting: {key}")

        parsed = _parse_setting(key, spec, value)

        section = getattr(self.config, spec.section)
        previous = getattr(section, spec.attr)
        setattr(section, spec.attr, parsed)

        problem = self._cross_field_problem()
        if problem:
            setattr(section, spec.attr, previous)
            raise ConfigUpdateError(problem)

        logger.info(f"Config updated: {key} = {parsed} (was {previous})")
        return parsed

    def _cross_field_problem(self) -> Optional[str]:
        cfg = self.config
        if cfg.confidence.min_to_trade > cfg.confidence.high_threshold:
            return "confidence.minToTrade must not exceed confidence.highThreshold"
        if cfg.technicals.rsi_oversold >= cfg.technicals.rsi_overbought:
            return "technicals.rsiOversold must be below technicals.rsiOverbought"
        return None

    def view_settings(self) -> Dict[str, Any]:
        """Current values of every exposed setting, keyed by dotted name"""
        view = {}
        for key, spec in MUTABLE_SETTINGS.items():
            view[key] = getattr(getattr(self.config, spec.section), spec.attr)
        for key, (section, attr) in READ_ONLY_SETTINGS.items():
            view[key] = getattr(getattr(self.config, section), attr)
        return view

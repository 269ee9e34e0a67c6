"""Configuration management for the gateway daemon."""

import os
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationMissing


CONFIG_DEFAULT_PATH = "/etc/ala-archa-http-backend.yaml"

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def validate_cron_expression(value: str) -> str:
    """Check that a cron expression has the five classic fields."""
    parts = str(value or "").split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression: {value!r}")
    return " ".join(parts)


class SpeedTestConfig(BaseModel):
    """Uplink benchmark settings."""
    speedtest_cli_path: str = Field(default="speedtest-cli", description="Path to the speedtest-cli binary")
    server: str = Field(default="", description="speedtest.net server id to benchmark against")
    crontab: str = Field(default="0 */3 * * *", description="Cron expression for the speed test job")

    check_crontab = field_validator("crontab")(validate_cron_expression)


class TelegramConfig(BaseModel):
    """Telegram notification settings."""
    bot_token: str = Field(description="Telegram bot token")
    message_timeout: timedelta = Field(default=timedelta(hours=24), description="Queued messages older than this are dropped")
    retry_crontab: str = Field(default="*/5 * * * *", description="Cron expression for the queue retry job")
    api_base_url: str = Field(default="https://api.telegram.org", description="Telegram Bot API base URL")

    check_crontab = field_validator("retry_crontab")(validate_cron_expression)


class MobileProviderConfig(BaseModel):
    """Prepaid mobile uplink settings."""
    get_balance_command: str = Field(description="Shell command printing the modem's USSD balance reply")
    update_tariff_command: str = Field(description="Shell command switching the tariff plan")
    restart_modem_command: str = Field(description="Shell command run after every balance query sequence")
    get_balance_crontab: Optional[str] = Field(default=None, description="Cron expression for the balance job")
    ussd_response_marker: str = Field(default="+CUSD:", description="Marker of the modem line carrying the encoded reply")
    balance_retry_count: int = Field(default=3, ge=1, description="Balance query attempts per run")
    balance_retry_delay: timedelta = Field(default=timedelta(seconds=10), description="Delay between balance query attempts")
    low_balance_threshold: float = Field(description="Alert when the balance drops below this value")
    low_download_speed_threshold: float = Field(description="Switch tariff when download speed is at or below this value")
    min_update_tariff_interval: timedelta = Field(description="Minimum interval between two tariff updates")
    telegram_chat_ids: list[str] = Field(default_factory=list, description="Chats receiving provider alerts")
    phone_number: str = Field(default="", description="Phone number shown in low balance alerts")

    @field_validator("get_balance_crontab")
    @classmethod
    def check_crontab(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return validate_cron_expression(value)

    @field_validator("telegram_chat_ids", mode="before")
    @classmethod
    def stringify_chat_ids(cls, value):
        if isinstance(value, list):
            return [str(v) for v in value]
        return value


class Config(BaseModel):
    """Main configuration for the gateway daemon."""

    log_level: str = Field(default="INFO", description="Logging level")
    http_listen: str = Field(default="127.0.0.1:8080", description="host:port for the HTTP API")

    # Access gating
    ipset_acl_name: str = Field(description="ipset holding clients allowed to reach the internet")
    ipset_shaper_name: str = Field(description="ipset holding rate-limited clients")
    bytes_unlimited_limit: int = Field(default=0, description="Bytes a client may send before shaping applies")
    blacklisted_macs: list[str] = Field(default_factory=list, description="MAC addresses refused registration")
    dhcp_leases_path: str = Field(default="/var/lib/dhcp/dhcpd.leases", description="ISC dhcpd leases file")

    # Reachability
    wide_network_ip: str = Field(default="8.8.8.8", description="Address probed to detect WAN reachability")
    wide_network_crontab: str = Field(default="* * * * *", description="Cron expression for the reachability job")

    persistent_state_path: str = Field(default="/var/lib/ala-archa/state.yaml", description="Durable state file")
    command_timeout: Optional[timedelta] = Field(default=None, description="Upper bound for external commands")

    speedtest: SpeedTestConfig = Field(default_factory=SpeedTestConfig)
    telegram: Optional[TelegramConfig] = Field(default=None)
    mobile_provider: Optional[MobileProviderConfig] = Field(default=None)

    check_crontab = field_validator("wide_network_crontab")(validate_cron_expression)

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        level = str(value or "").strip().upper()
        if level == "WARN":
            level = "WARNING"
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    @field_validator("blacklisted_macs")
    @classmethod
    def normalize_macs(cls, value: list[str]) -> list[str]:
        return [str(v).strip().lower() for v in value if str(v).strip()]

    def require_telegram(self) -> TelegramConfig:
        if self.telegram is None:
            raise ConfigurationMissing("telegram section is not configured")
        return self.telegram

    def require_mobile_provider(self) -> MobileProviderConfig:
        if self.mobile_provider is None:
            raise ConfigurationMissing("mobile_provider section is not configured")
        return self.mobile_provider

    def command_timeout_seconds(self) -> Optional[float]:
        if self.command_timeout is None:
            return None
        return self.command_timeout.total_seconds()


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from a YAML file, with environment overrides."""
    if config_path is None:
        config_path = os.getenv("ALA_ARCHA_CONFIG", CONFIG_DEFAULT_PATH)

    path = Path(config_path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ValueError(f"Failed to load config file {str(path)!r}: {e}") from e
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse config file {str(path)!r}: {e}") from e

    if not isinstance(config_data, dict):
        raise ValueError("Config YAML must be a mapping")

    log_level = os.getenv("LOG_LEVEL")
    if log_level:
        config_data["log_level"] = log_level

    try:
        return Config(**config_data)
    except ValidationError as e:
        raise ValueError(f"Invalid config file {str(path)!r}: {e}") from e


def dump_config(config: Config) -> str:
    """Render the parsed config back to YAML. Helps to find typos."""
    return yaml.safe_dump(config.model_dump(mode="json"), allow_unicode=True, sort_keys=False)

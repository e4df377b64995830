"""Runtime settings loaded from the environment (and an optional .env file)."""

from dataclasses import dataclass
from decimal import Decimal
import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Settings:
    database_url: str = 'sqlite:///reservations.db'
    hold_duration_seconds: int = 600
    hold_min_seconds: int = 60
    hold_max_seconds: int = 1800
    sweep_interval_seconds: int = 10
    default_seat_price: Decimal = Decimal('10.00')
    payment_max_attempts: int = 1
    payment_gateway_url: str = ''
    payment_timeout_seconds: int = 5
    log_level: str = 'INFO'
    port: int = 5000
    demo_show: bool = True

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from environment variables, falling back to defaults."""
        return cls(
            database_url=os.getenv('DATABASE_URL') or cls.database_url,
            hold_duration_seconds=_env_int('HOLD_DURATION_SECONDS', cls.hold_duration_seconds),
            hold_min_seconds=_env_int('HOLD_MIN_SECONDS', cls.hold_min_seconds),
            hold_max_seconds=_env_int('HOLD_MAX_SECONDS', cls.hold_max_seconds),
            sweep_interval_seconds=_env_int('SWEEP_INTERVAL_SECONDS', cls.sweep_interval_seconds),
            default_seat_price=Decimal(os.getenv('DEFAULT_SEAT_PRICE') or cls.default_seat_price),
            payment_max_attempts=max(1, _env_int('PAYMENT_MAX_ATTEMPTS', cls.payment_max_attempts)),
            payment_gateway_url=os.getenv('PAYMENT_GATEWAY_URL', cls.payment_gateway_url),
            payment_timeout_seconds=_env_int('PAYMENT_TIMEOUT_SECONDS', cls.payment_timeout_seconds),
            log_level=os.getenv('LOG_LEVEL', cls.log_level).upper(),
            port=_env_int('PORT', cls.port),
            demo_show=_env_bool('DEMO_SHOW', cls.demo_show),
        )

    def clamp_hold_duration(self, seconds: int) -> int:
        return max(self.hold_min_seconds, min(seconds, self.hold_max_seconds))

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"


def _split(value: str) -> Tuple[str, ...]:
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./coursepay.db"
    jwt_secret: str = ""
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    mercado_pago_access_token: str = ""
    mercado_pago_public_key: str = ""
    mercado_pago_webhook_secret: str = ""
    enabled_gateways: Tuple[str, ...] = ("stripe",)
    default_gateway: str = ""
    supported_currencies: Tuple[str, ...] = ("usd", "eur", "gbp")
    public_base_url: str = ""
    log_level: str = "INFO"
    log_format: str = "json"
    history_page_size: int = 10

    @property
    def gateway(self) -> str:
        return self.default_gateway or self.enabled_gateways[0]


def load_settings() -> Settings:
    load_dotenv(dotenv_path=ENV_PATH)

    gateways = _split(os.getenv("PAYMENT_GATEWAYS", "stripe"))
    if not gateways:
        raise RuntimeError("PAYMENT_GATEWAYS is empty. Check your .env file.")

    default_gateway = os.getenv("DEFAULT_GATEWAY", "").strip().lower()
    if default_gateway and default_gateway not in gateways:
        raise RuntimeError(f"DEFAULT_GATEWAY '{default_gateway}' is not in PAYMENT_GATEWAYS")

    return Settings(
        database_url=os.getenv("DATABASE_URL") or "sqlite:///./coursepay.db",
        jwt_secret=os.getenv("JWT_SECRET", ""),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        mercado_pago_access_token=os.getenv("MERCADO_PAGO_ACCESS_TOKEN", ""),
        mercado_pago_public_key=os.getenv("MERCADO_PAGO_PUBLIC_KEY", ""),
        mercado_pago_webhook_secret=os.getenv("MERCADO_PAGO_WEBHOOK_SECRET", ""),
        enabled_gateways=gateways,
        default_gateway=default_gateway,
        supported_currencies=_split(os.getenv("SUPPORTED_CURRENCIES", "usd,eur,gbp")),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "json"),
    )

import os
from decimal import Decimal
from dotenv import load_dotenv

from checkout_service.domain.models import ShippingMethod
from checkout_service.domain.pricing import PricingConfig

load_dotenv()


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _shipping_rates(value: str) -> dict[ShippingMethod, Decimal]:
    """'standard:300,express:500' -> {ShippingMethod.STANDARD: Decimal('300'), ...}"""
    rates = {}
    for pair in value.split(","):
        if not pair.strip():
            continue
        method, amount = pair.split(":", 1)
        rates[ShippingMethod(method.strip())] = Decimal(amount.strip())
    return rates


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")
    SQLITE_PATH: str = os.getenv("SQLITE_PATH", "./checkout.db")

    # API
    API_TOKEN: str = os.getenv("API_TOKEN", "")
    SERVICE_URL: str = os.getenv("SERVICE_URL", "http://localhost:8000")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Services
    CART_BASE_URL: str = os.getenv("CART_BASE_URL", "http://localhost:8001")
    NOTIFICATIONS_BASE_URL: str = os.getenv("NOTIFICATIONS_BASE_URL", "http://localhost:8002")

    # Kafka
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    KAFKA_ORDER_TOPIC: str = os.getenv("KAFKA_ORDER_TOPIC", "checkout.order-events")
    KAFKA_SHIPMENT_TOPIC: str = os.getenv("KAFKA_SHIPMENT_TOPIC", "logistics.shipment-events")

    # Pricing
    TAX_RATE: str = os.getenv("TAX_RATE", "0.16")
    FREE_SHIPPING_THRESHOLD: str = os.getenv("FREE_SHIPPING_THRESHOLD", "5000")
    SHIPPING_RATES: str = os.getenv("SHIPPING_RATES", "standard:300,express:500,overnight:1000,pickup:0")
    REMOTE_AREAS: str = os.getenv("REMOTE_AREAS", "Turkana,Marsabit,Mandera,Wajir")
    REMOTE_AREA_SURCHARGE: str = os.getenv("REMOTE_AREA_SURCHARGE", "1.5")
    CURRENCY: str = os.getenv("CURRENCY", "KES")

    # Reservations
    RESERVATION_HOLD_MINUTES: int = int(os.getenv("RESERVATION_HOLD_MINUTES", "30"))
    SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
    SWEEP_BATCH_SIZE: int = int(os.getenv("SWEEP_BATCH_SIZE", "50"))
    RUN_SWEEPER_IN_APP: bool = _flag(os.getenv("RUN_SWEEPER_IN_APP", "true"))
    ESTIMATED_DELIVERY_DAYS: int = int(os.getenv("ESTIMATED_DELIVERY_DAYS", "7"))

    # Payment providers
    MPESA_BASE_URL: str = os.getenv("MPESA_BASE_URL", "https://sandbox.safaricom.co.ke")
    MPESA_CONSUMER_KEY: str = os.getenv("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET: str = os.getenv("MPESA_CONSUMER_SECRET", "")
    MPESA_SHORT_CODE: str = os.getenv("MPESA_SHORT_CODE", "174379")
    MPESA_PASSKEY: str = os.getenv("MPESA_PASSKEY", "")
    STRIPE_BASE_URL: str = os.getenv("STRIPE_BASE_URL", "https://api.stripe.com")
    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    PAYSTACK_BASE_URL: str = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    PAYSTACK_SECRET_KEY: str = os.getenv("PAYSTACK_SECRET_KEY", "")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for the application"""
        if not self.POSTGRES_CONNECTION_STRING:
            return f"sqlite+aiosqlite:///{self.SQLITE_PATH}"
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql+asyncpg://")

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Sync URL for Alembic"""
        if not self.POSTGRES_CONNECTION_STRING:
            return f"sqlite:///{self.SQLITE_PATH}"
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://")

    @property
    def pricing(self) -> PricingConfig:
        return PricingConfig(
            tax_rate=Decimal(self.TAX_RATE),
            free_shipping_threshold=Decimal(self.FREE_SHIPPING_THRESHOLD),
            shipping_rates=_shipping_rates(self.SHIPPING_RATES),
            remote_areas=frozenset(a.strip() for a in self.REMOTE_AREAS.split(",") if a.strip()),
            remote_area_surcharge=Decimal(self.REMOTE_AREA_SURCHARGE),
            currency=self.CURRENCY,
        )


settings = Settings()

"""
Configuration management for the shipsync engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict, List, Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "shipsync"
    environment: str = "development"
    log_level: str = "INFO"
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./shipsync.db"

    # ShipBob
    shipbob_api_base_url: str = "https://api.shipbob.com/2025-07"
    shipbob_parent_api_token: Optional[str] = None  # Parent-level token for transactions:query
    shipbob_request_timeout_seconds: float = 60.0

    # Pacing / rate limits
    request_delay_seconds: float = 0.1  # Fixed gap between calls on one token
    rate_limit_wait_seconds: float = 60.0  # Used when a 429 carries no Retry-After

    # Batching and paging
    batch_size: int = 500
    lookup_page_size: int = 1000
    order_page_limit: int = 250
    transaction_page_size: int = 1000
    transaction_reference_batch: int = 100
    max_pages: int = 500  # Hard cap per paginated fetch

    # Timeline polling tiers
    timeline_fresh_days: int = 3
    timeline_older_days: int = 14
    timeline_fresh_interval_minutes: int = 15
    timeline_older_interval_minutes: int = 120
    timeline_capacity: int = 200  # Shipments per tenant per pass
    timeline_fresh_share: float = 0.7
    pre_label_statuses: List[str] = ["None", "Processing", "Pending", "OnHold", "Exception", "ImportReview"]

    # Reconciliation
    reconcile_max_verifications: int = 200

    # Cadence (default for tenants without an explicit interval)
    default_sync_interval_minutes: int = 5

    # Fee label -> system tenant display name
    system_fee_routes: Dict[str, str] = {
        "Payment": "ShipBob Payments",
        "Credit Card Processing Fee": "Jetpack Costs",
    }
    # Default-typed fee labels resolved through shipment/return/receiving lookups
    credit_fee_labels: List[str] = ["Credit"]

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

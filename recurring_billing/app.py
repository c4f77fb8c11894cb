"""Application entry point.

Embedding processes call `create_app()` once at startup. It configures
logging from LOG_LEVEL / LOG_FORMAT, loads configuration, and wires the
engine and the keeper to the shared store, ledger, clock and event sink.
"""

import os
from typing import NamedTuple, Optional

from recurring_billing.config import get_config
from recurring_billing.logging_config import configure_logging, get_logger
from recurring_billing.services.billing_engine import (
    SubscriptionEngine,
    get_subscription_engine,
)
from recurring_billing.services.billing_keeper import BillingKeeper

logger = get_logger(__name__)


class BillingApp(NamedTuple):
    engine: SubscriptionEngine
    keeper: BillingKeeper


def create_app(config_path: Optional[str] = None) -> BillingApp:
    """Create and configure the billing application.

    Args:
        config_path: Path to billing.yaml (defaults to CONFIG_PATH or config/billing.yaml)

    Returns:
        BillingApp with the global engine and a keeper bound to it
    """
    # Configure logging
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    config = get_config(config_path)
    engine = get_subscription_engine()
    keeper = BillingKeeper(subscription_engine=engine)

    logger.info(
        "billing_app_created",
        config_path=str(config.config_path),
        authorization_mode=config.authorization_mode,
        event_backend=config.event_backend,
    )
    return BillingApp(engine=engine, keeper=keeper)

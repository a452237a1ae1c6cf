from sqlalchemy.orm import declarative_base

Base = declarative_base()

# --------------------------------------------------
# Affiliati & attribuzione
# --------------------------------------------------
from .affiliates import Affiliate, AffiliateAlias  # noqa: F401
from .customer_links import CustomerAffiliateLink  # noqa: F401

# --------------------------------------------------
# Commerce / ledger
# --------------------------------------------------
from .subscriptions import Subscription  # noqa: F401
from .transactions import Transaction  # noqa: F401
from .monthly_payouts import MonthlyPayout  # noqa: F401

# --------------------------------------------------
# Ingestion (idempotenza webhook + run-log sync)
# --------------------------------------------------
from .ingestion_events import IngestionEvent  # noqa: F401
from .sync_logs import SyncLog  # noqa: F401

# --------------------------------------------------
# Admin
# --------------------------------------------------
from .admin import Admin  # noqa: F401

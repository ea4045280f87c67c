"""Model registry. Import every model so Alembic autogenerate sees all tables."""

from poflow.database import Base  # noqa: F401

from poflow.models.organization import Organization  # noqa: F401
from poflow.models.user import User  # noqa: F401
from poflow.models.counter import Counter  # noqa: F401
from poflow.models.tax_rate import TaxRate  # noqa: F401
from poflow.models.purchase_order import PurchaseOrder, LineItem  # noqa: F401
from poflow.models.approval import ApprovalRequest, ApprovalAction  # noqa: F401

"""ORM Models — SQLAlchemy declarative models for billing entities.

Invariants:
    - All models inherit from Base (db/base.py)
    - Order is the aggregate root for line items

Design Decisions:
    - One file per entity for locality
    - All models imported here so SQLAlchemy resolves string-based relationship()
      references before any query runs
"""

from app.models.order import Order, OrderItem  # noqa: F401
from app.models.discount import Discount  # noqa: F401
from app.models.subscription import Subscription  # noqa: F401

# app/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from app.models.user import User  # noqa: F401
from app.models.course import Category, Course  # noqa: F401

from app.models.order import Order  # noqa: F401
from app.models.order_item import OrderItem  # noqa: F401

from app.models.discount import DiscountCode, DiscountUsage  # noqa: F401

from app.models.enrollment import Enrollment  # noqa: F401

# models.py
import enum

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, Numeric, String, DateTime, Text, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


class OrderStatus(str, enum.Enum):
    NEW = "new"
    PROCESSING = "processing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderType(str, enum.Enum):
    TABLE = "table"
    TAKEAWAY = "takeaway"


class ItemStatus(str, enum.Enum):
    PREPARING = "preparing"
    READY = "ready"


class TableStatus(str, enum.Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    RESERVED = "reserved"


class WaiterCallStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


TERMINAL_ORDER_STATUSES = (OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value)
ACTIVE_ORDER_STATUSES = (OrderStatus.NEW.value, OrderStatus.PROCESSING.value, OrderStatus.READY.value)
ACTIVE_CALL_STATUSES = (WaiterCallStatus.PENDING.value, WaiterCallStatus.IN_PROGRESS.value)

USER_ROLES = ("admin", "manager", "waiter", "chef", "editor")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(100), unique=True, nullable=True)
    password = Column(String(255), nullable=False)
    first_name = Column(String(100))
    last_name = Column(String(100))
    role = Column(String(20), nullable=False, default="waiter")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, default=True)
    sort_order = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    products = relationship("Product", back_populates="category", cascade="all, delete-orphan")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    # minutes, copied onto order items as their countdown duration
    preparation_time = Column(Integer, nullable=False, default=15)
    is_active = Column(Boolean, default=True)
    is_featured = Column(Boolean, default=False)
    sort_order = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    category = relationship("Category", back_populates="products")
    options = relationship(
        "ProductOption",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductOption.sort_order",
    )


class ProductOption(Base):
    __tablename__ = "product_options"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    price_modifier = Column(Numeric(10, 2), default=0)
    is_active = Column(Boolean, default=True)
    is_required = Column(Boolean, default=False)
    sort_order = Column(Integer, default=0)

    product = relationship("Product", back_populates="options")


class RestaurantTable(Base):
    __tablename__ = "restaurant_tables"

    id = Column(Integer, primary_key=True, index=True)
    table_number = Column(String(50), unique=True, index=True, nullable=False)
    qr_code_url = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True)
    status = Column(String(20), nullable=False, default=TableStatus.AVAILABLE.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    table_id = Column(Integer, ForeignKey("restaurant_tables.id", ondelete="SET NULL"), nullable=True)
    order_type = Column(String(20), nullable=False, default=OrderType.TABLE.value)
    status = Column(String(20), nullable=False, default=OrderStatus.NEW.value, index=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    special_instructions = Column(Text)
    customer_name = Column(String(100))
    customer_email = Column(String(100))
    customer_phone = Column(String(20))
    customer_address = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    table = relationship("RestaurantTable")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(10, 2), nullable=False)
    special_instructions = Column(Text)
    status = Column(String(20), nullable=False, default=ItemStatus.PREPARING.value)
    duration = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="items")
    options = relationship(
        "OrderItemOption",
        back_populates="order_item",
        cascade="all, delete-orphan",
        order_by="OrderItemOption.id",
    )


class OrderItemOption(Base):
    __tablename__ = "order_item_options"

    id = Column(Integer, primary_key=True, index=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False)
    product_option_id = Column(Integer, ForeignKey("product_options.id"), nullable=False)
    product_option_name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), default=0)

    order_item = relationship("OrderItem", back_populates="options")


_ACTIVE_CALL_CLAUSE = text("status IN ('pending', 'in_progress')")


class WaiterCall(Base):
    __tablename__ = "waiter_calls"
    # at most one active call per table
    __table_args__ = (
        Index(
            "uq_waiter_calls_active_table",
            "table_id",
            unique=True,
            postgresql_where=_ACTIVE_CALL_CLAUSE,
            sqlite_where=_ACTIVE_CALL_CLAUSE,
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    table_id = Column(Integer, ForeignKey("restaurant_tables.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default=WaiterCallStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    table = relationship("RestaurantTable")


class Feedback(Base):
    __tablename__ = "feedback"

    id = Column(Integer, primary_key=True, index=True)
    table_id = Column(Integer, ForeignKey("restaurant_tables.id", ondelete="SET NULL"), nullable=True)
    name = Column(String(100), nullable=False)
    email = Column(String(100))
    food_rating = Column(Integer)
    service_rating = Column(Integer)
    ambience_rating = Column(Integer)
    price_rating = Column(Integer)
    overall_rating = Column(Integer, nullable=False)
    comments = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    table = relationship("RestaurantTable")


class SiteSetting(Base):
    __tablename__ = "site_settings"

    id = Column(Integer, primary_key=True, index=True)
    setting_key = Column(String(100), unique=True, nullable=False)
    setting_value = Column(Text)
    setting_type = Column(String(20), default="text")
    is_public = Column(Boolean, default=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, validator

from models import (
    ItemStatus,
    OrderStatus,
    OrderType,
    TableStatus,
    USER_ROLES,
    WaiterCallStatus,
)


def _check_choice(value: str, choices, label: str) -> str:
    allowed = [c.value if hasattr(c, "value") else c for c in choices]
    if value not in allowed:
        raise ValueError(f"{label} must be one of: {', '.join(allowed)}")
    return value


class UserCreate(BaseModel):
    username: str
    password: str
    role: str = "waiter"
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @validator("username")
    def validate_username(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Username cannot be empty")
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Username cannot exceed 50 characters")
        return v.strip()

    @validator("password")
    def validate_password(cls, v: str) -> str:
        if not v or len(v) < 4:
            raise ValueError("Password must be at least 4 characters")
        return v

    @validator("role")
    def validate_role(cls, v: str) -> str:
        return _check_choice(v, USER_ROLES, "Role")


class UserLogin(BaseModel):
    username: str
    password: str


class OrderItemOptionCreate(BaseModel):
    product_option_id: int
    price_modifier: Optional[Decimal] = None


class OrderItemCreate(BaseModel):
    product_id: int
    quantity: int = 1
    price: Optional[Decimal] = None
    special_instructions: Optional[str] = None
    # minutes; falls back to the product's preparation time
    duration: Optional[int] = None
    options: List[OrderItemOptionCreate] = []

    @validator("quantity")
    def validate_quantity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be greater than 0")
        if v > 100:
            raise ValueError("Quantity cannot exceed 100")
        return v

    @validator("duration")
    def validate_duration(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("Duration cannot be negative")
        return v


class OrderCreate(BaseModel):
    table_id: Optional[int] = None
    table_number: Optional[str] = None
    order_type: str = OrderType.TABLE.value
    total_amount: Decimal
    special_instructions: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    items: List[OrderItemCreate]

    @validator("order_type")
    def validate_order_type(cls, v: str) -> str:
        return _check_choice(v, OrderType, "Order type")

    @validator("items")
    def validate_items(cls, v: List[OrderItemCreate]) -> List[OrderItemCreate]:
        if not v:
            raise ValueError("Order items are required")
        return v


class OrderStatusUpdate(BaseModel):
    status: str

    @validator("status")
    def validate_status(cls, v: str) -> str:
        return _check_choice(v, OrderStatus, "Order status")


class OrderItemStatusUpdate(BaseModel):
    status: str

    @validator("status")
    def validate_status(cls, v: str) -> str:
        return _check_choice(v, ItemStatus, "Item status")


class WaiterCallCreate(BaseModel):
    table_id: Optional[int] = None


class WaiterCallStatusUpdate(BaseModel):
    status: str

    @validator("status")
    def validate_status(cls, v: str) -> str:
        return _check_choice(v, WaiterCallStatus, "Waiter call status")


class TableCreate(BaseModel):
    table_number: str
    is_active: bool = True
    status: str = TableStatus.AVAILABLE.value

    @validator("table_number")
    def validate_table_number(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Table number is required")
        if len(v) > 50:
            raise ValueError("Table number cannot exceed 50 characters")
        return v.strip()

    @validator("status")
    def validate_status(cls, v: str) -> str:
        return _check_choice(v, TableStatus, "Table status")


class TableUpdate(BaseModel):
    table_number: Optional[str] = None
    is_active: Optional[bool] = None
    status: Optional[str] = None
    regenerate_qr: bool = False

    @validator("status")
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_choice(v, TableStatus, "Table status")


class TableStatusUpdate(BaseModel):
    status: str

    @validator("status")
    def validate_status(cls, v: str) -> str:
        return _check_choice(v, TableStatus, "Table status")


class FeedbackCreate(BaseModel):
    table_id: Optional[int] = None
    name: str
    email: Optional[str] = None
    food_rating: Optional[int] = None
    service_rating: Optional[int] = None
    ambience_rating: Optional[int] = None
    price_rating: Optional[int] = None
    overall_rating: int
    comments: Optional[str] = None

    @validator("name")
    def validate_name(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Name is required")
        return v.strip()

    @validator("food_rating", "service_rating", "ambience_rating", "price_rating", "overall_rating")
    def validate_rating(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and (v < 1 or v > 5):
            raise ValueError("Ratings must be between 1 and 5")
        return v


class CategoryCreate(BaseModel):
    name: str
    description: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0

    @validator("name")
    def validate_name(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Category name cannot be empty")
        return v.strip()


class ProductOptionCreate(BaseModel):
    name: str
    price_modifier: Decimal = Decimal("0")
    is_required: bool = False
    sort_order: int = 0


class ProductCreate(BaseModel):
    category_id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    preparation_time: int = 15
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = 0
    options: List[ProductOptionCreate] = []

    @validator("name")
    def validate_name(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Product name cannot be empty")
        if len(v) > 255:
            raise ValueError("Product name cannot exceed 255 characters")
        return v.strip()

    @validator("price")
    def validate_price(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Price must be greater than 0")
        return round(v, 2)

    @validator("preparation_time")
    def validate_preparation_time(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Preparation time cannot be negative")
        return v


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None

    @validator("name")
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v.strip()) == 0:
            raise ValueError("Category name cannot be empty")
        return v.strip() if v is not None else v


class ProductUpdate(BaseModel):
    category_id: Optional[int] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    preparation_time: Optional[int] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    sort_order: Optional[int] = None

    @validator("name")
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if len(v.strip()) == 0:
            raise ValueError("Product name cannot be empty")
        if len(v) > 255:
            raise ValueError("Product name cannot exceed 255 characters")
        return v.strip()

    @validator("price")
    def validate_price(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v <= 0:
            raise ValueError("Price must be greater than 0")
        return round(v, 2) if v is not None else v

    @validator("preparation_time")
    def validate_preparation_time(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("Preparation time cannot be negative")
        return v


class ProductOptionUpdate(BaseModel):
    name: Optional[str] = None
    price_modifier: Optional[Decimal] = None
    is_active: Optional[bool] = None
    is_required: Optional[bool] = None
    sort_order: Optional[int] = None

    @validator("name")
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v.strip()) == 0:
            raise ValueError("Option name cannot be empty")
        return v.strip() if v is not None else v


class SettingUpdate(BaseModel):
    setting_value: Optional[str] = None
    setting_type: str = "text"
    is_public: bool = True

    @validator("setting_type")
    def validate_setting_type(cls, v: str) -> str:
        return _check_choice(v, ("text", "number", "boolean", "json", "image"), "Setting type")

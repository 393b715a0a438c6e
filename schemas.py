"""
Database Schemas for the storefront

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product",
OrderLine -> stored in "order_item").
Prices come in as decimal amounts and are stored as integer cents.
"""
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Category = Literal["clothing", "shoes", "jewelry", "handbags"]
PaymentMethod = Literal["stripe", "paypal", "bank_transfer"]
OrderStatusValue = Literal["pending", "processing", "shipped", "delivered", "cancelled"]

CATEGORIES = ["clothing", "shoes", "jewelry", "handbags"]
PAYMENT_METHODS = ["stripe", "paypal", "bank_transfer"]

SIZES = {
    "shoes": ["5", "6", "7", "8", "9", "10", "11"],
    "clothing": ["XS", "S", "M", "L", "XL", "2XL"],
}


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: Optional[str] = None
    token: Optional[str] = None
    is_admin: bool = False
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None


class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    price: Decimal = Field(..., ge=0, decimal_places=2, description="Unit price in dollars")
    category: Category
    stock_quantity: int = Field(0, ge=0, description="Units on hand")
    description: Optional[str] = None
    image_url: Optional[str] = Field(None, description="Primary image URL")


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    category: Optional[Category] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    image_url: Optional[str] = None


class CartLine(BaseModel):
    product_id: str = Field(..., alias="id")
    size: Optional[str] = None
    quantity: int = Field(1, gt=0)
    price: Decimal = Field(Decimal("0"), ge=0, description="Unit price when added to the cart")
    name: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None

    model_config = {"populate_by_name": True}

    @property
    def key(self):
        return (self.product_id, self.size)


class OrderLine(BaseModel):
    order_id: str
    product_id: str
    size: Optional[str] = None
    name: str
    quantity: int = Field(..., gt=0)
    price_at_purchase_cents: int = Field(..., ge=0)


class Order(BaseModel):
    order_number: str
    user_id: str
    total_amount_cents: int = Field(..., ge=0, description="Sum of the order lines")
    tax_amount_cents: int = Field(0, ge=0)
    amount_due_cents: int = Field(..., ge=0, description="Total plus tax, the amount authorised")
    currency: str = "usd"
    status: OrderStatusValue = "pending"
    payment_method: PaymentMethod
    payment_intent_id: Optional[str] = None
    shipping_address: str
    tracking_number: Optional[str] = None
    committed: bool = False
    needs_reconciliation: bool = False
    status_history: List[dict] = []


class Review(BaseModel):
    product_id: str
    user_id: str
    user_name: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    verified: bool = False

"""
flame&crumble Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class User -> collection "user".

These schemas are used for validation before inserting documents. The *DTO models further down
are request bodies.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Category = Literal["candles", "cookies", "chocolates"]
AddressType = Literal["Home", "Work", "Other"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
Role = Literal["user", "admin"]


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Role = "user"
    is_verified: bool = False
    verification_code_hash: Optional[str] = None
    verification_code_expires: Optional[datetime] = None


class Product(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    category: Category
    stock: int = Field(0, ge=0)
    image: str
    is_featured: bool = False


class CartItem(BaseModel):
    item_id: str
    product_id: str
    quantity: int = Field(1, ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []
    version: int = 0
    checkout_order_id: Optional[str] = None


class WishlistItem(BaseModel):
    item_id: str
    product_id: str
    added_at: datetime


class Wishlist(BaseModel):
    user_id: str
    items: List[WishlistItem] = []
    version: int = 0


class Address(BaseModel):
    user_id: str
    type: AddressType = "Home"
    full_name: str = Field(..., min_length=3)
    phone: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    zip: str
    country: str
    is_default: bool = False
    default_seq: int = 0


class ShippingAddress(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    street: str
    city: str
    state: str
    zip: str
    country: str


class OrderItem(BaseModel):
    product_id: str
    name: str
    image: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="unit price captured at order time")


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    shipping_address: ShippingAddress
    payment_method: str


# Request bodies

class RegisterDTO(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginDTO(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class VerifyEmailDTO(BaseModel):
    email: EmailStr
    code: str


class ResendVerificationDTO(BaseModel):
    email: EmailStr


class ProfileDTO(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None


class ProductDTO(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    category: Category
    stock: int = Field(0, ge=0)
    image: str
    is_featured: bool = False


class ProductUpdateDTO(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[Category] = None
    stock: Optional[int] = Field(None, ge=0)
    image: Optional[str] = None
    is_featured: Optional[bool] = None


class AddItemDTO(BaseModel):
    product_id: str
    quantity: int = 1


class UpdateItemDTO(BaseModel):
    # bounds are checked by the cart so the error names the business rule
    quantity: int


class WishlistAddDTO(BaseModel):
    product_id: str


class AddressDTO(BaseModel):
    type: AddressType = "Home"
    full_name: str = Field(..., min_length=3)
    phone: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    zip: str
    country: str
    is_default: bool = False


class AddressUpdateDTO(BaseModel):
    type: Optional[AddressType] = None
    full_name: Optional[str] = Field(None, min_length=3)
    phone: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    is_default: Optional[bool] = None


class CheckoutDTO(BaseModel):
    shipping_address: Optional[ShippingAddress] = None
    address_id: Optional[str] = None
    payment_method: str = Field(..., min_length=1)


class OrderStatusDTO(BaseModel):
    status: OrderStatus

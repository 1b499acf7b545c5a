"""
Schemas for the storefront and admin API

Pydantic models for everything that crosses the wire or lands in storage.
Field names are snake_case in Python and camelCase on the wire
(e.g. `front_image` <-> "frontImage"); both spellings are accepted on input.
"""
import re
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, SecretStr, field_validator, model_validator
from pydantic.alias_generators import to_camel

PRODUCT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
PRODUCT_ID_MAX = 50
IMAGE_PATH_RE = re.compile(r"^(img/|\./img/|/img/)[a-zA-Z0-9._/-]+\.(jpg|jpeg|png|gif|webp)$", re.IGNORECASE)

PaymentMethod = Literal["card", "upi", "netbanking", "cod"]
Printing = Literal["none", "pre-printed", "custom"]


def is_valid_product_id(value: str) -> bool:
    return bool(PRODUCT_ID_RE.match(value or "")) and len(value) <= PRODUCT_ID_MAX


def is_valid_image_path(value: str) -> bool:
    if not value or not isinstance(value, str):
        return False
    if ".." in value or "//" in value:
        return False
    return bool(IMAGE_PATH_RE.match(value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StrictCamelModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


# Cart

class CartItem(CamelModel):
    id: str
    name: str
    image: Optional[str] = None
    size: str = ""
    printing: Printing = "none"
    customization: str = ""
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)


class CartSummary(CamelModel):
    items: List[CartItem] = Field(default_factory=list)
    subtotal: float = 0
    shipping: float = 0
    total: float = 0


class AddToCartRequest(StrictCamelModel):
    product_id: str = Field(..., min_length=1, max_length=PRODUCT_ID_MAX)
    size: str = Field(..., min_length=1, max_length=10)
    printing: Printing = "none"
    customization: str = Field("", max_length=100)
    quantity: int = Field(1, ge=1, le=99)


class UpdateQuantityRequest(StrictCamelModel):
    quantity: int


# Events

class Event(CamelModel):
    type: str
    data: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


# Checkout

class ShippingAddress(StrictCamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True)

    full_name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    address: str = Field(..., min_length=3, max_length=300)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    zip: str = Field(..., pattern=r"^[A-Za-z0-9 -]{3,10}$")
    country: str = Field(..., min_length=2, max_length=100)
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9 -]{7,15}$")

    @field_validator("full_name", "address", "city", "state", "zip", "country", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("phone", mode="before")
    @classmethod
    def blank_phone(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v


class CardPayment(StrictCamelModel):
    method: Literal["card"]
    holder_name: str = ""
    number: SecretStr = SecretStr("")
    expiry: str = ""
    cvv: SecretStr = SecretStr("")


class UpiPayment(StrictCamelModel):
    method: Literal["upi"]
    vpa: str = Field("", alias="upiId")


class NetbankingPayment(StrictCamelModel):
    method: Literal["netbanking"]
    bank: str = ""


class CodPayment(StrictCamelModel):
    method: Literal["cod"]


PaymentDetails = Annotated[
    Union[CardPayment, UpiPayment, NetbankingPayment, CodPayment],
    Field(discriminator="method"),
]


class PlaceOrderRequest(StrictCamelModel):
    payment: PaymentDetails


class OrderItem(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    name: str
    price: float
    quantity: int
    size: str = ""
    image: Optional[str] = None


class Order(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    order_number: str
    method: PaymentMethod
    subtotal: float
    shipping: float
    total: float
    payment_token: str
    items: Tuple[OrderItem, ...]
    shipping_address: ShippingAddress
    created_at: datetime = Field(default_factory=utcnow)


# Catalog

class ProductImages(CamelModel):
    front: str
    back: Optional[str] = None


class Product(CamelModel):
    id: str
    name: str
    price: float = Field(..., gt=0, lt=1_000_000)
    description: str = ""
    images: ProductImages
    out_of_stock: bool = False
    unavailable_sizes: List[str] = Field(default_factory=list)


class ProductCreateRequest(StrictCamelModel):
    id: str
    name: str
    price: float = Field(..., gt=0, lt=1_000_000)
    description: Optional[str] = None
    front_image: str
    back_image: Optional[str] = None

    @field_validator("id")
    @classmethod
    def check_id(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_product_id(v):
            raise ValueError("Invalid product ID. Use only letters, numbers, hyphens, and underscores.")
        return v

    @field_validator("name")
    @classmethod
    def sanitize_name(cls, v: str) -> str:
        v = v.strip()[:200]
        if not v:
            raise ValueError("Product name is required")
        return v

    @field_validator("description")
    @classmethod
    def sanitize_description(cls, v: Optional[str]) -> str:
        return (v or "").strip()[:2000]

    @field_validator("front_image")
    @classmethod
    def check_front_image(cls, v: str) -> str:
        if not is_valid_image_path(v.strip()):
            raise ValueError("Invalid front image path")
        return v.strip()

    @field_validator("back_image")
    @classmethod
    def check_back_image(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        if not is_valid_image_path(v.strip()):
            raise ValueError("Invalid back image path")
        return v.strip()

    def to_product(self) -> Product:
        return Product(
            id=self.id,
            name=self.name,
            price=self.price,
            description=self.description or "",
            images=ProductImages(front=self.front_image, back=self.back_image),
        )


class StockUpdateRequest(StrictCamelModel):
    out_of_stock: bool


class SiteContact(StrictCamelModel):
    email: str = Field("", max_length=200)
    phone: str = Field("", max_length=50)
    address: str = Field("", max_length=500)

    @model_validator(mode="after")
    def at_least_one(self):
        self.email, self.phone, self.address = self.email.strip(), self.phone.strip(), self.address.strip()
        if not (self.email or self.phone or self.address):
            raise ValueError("Please provide at least one contact detail.")
        return self


# Admin

class AdminUser(CamelModel):
    email: str
    password_hash: str
    created_at: datetime = Field(default_factory=utcnow)


class LoginRequest(StrictCamelModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)


# Customers

class RegisterRequest(StrictCamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)


class CustomerLoginRequest(StrictCamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=72)


class Customer(CamelModel):
    name: str
    email: str
    password_hash: str
    phone: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    created_at: datetime = Field(default_factory=utcnow)

    def public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"password_hash"})

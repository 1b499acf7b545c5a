"""
Customer accounts and saved shipping profiles.

Customers authenticate with a bearer JWT, the same way the rest of the API
family does; tokens carry the email as `sub`.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import jwt
from passlib.context import CryptContext

from schemas import Customer, ShippingAddress
from storage import KeyValueStore

logger = logging.getLogger(__name__)

USERS_KEY = "users"
JWT_ALGO = "HS256"


class CustomerError(Exception):
    status_code = 400


class EmailTakenError(CustomerError):
    def __init__(self):
        super().__init__("Email already registered")


class InvalidCredentialsError(CustomerError):
    status_code = 401

    def __init__(self):
        super().__init__("Invalid credentials")


class InvalidTokenError(CustomerError):
    status_code = 401


class CustomerAccounts:
    def __init__(self, store: KeyValueStore, password_ctx: CryptContext, jwt_secret: str,
                 jwt_expires_min: int, clock: Callable[[], float]):
        self.store = store
        self.password_ctx = password_ctx
        self.jwt_secret = jwt_secret
        self.jwt_expires_min = jwt_expires_min
        self.clock = clock

    def _load(self) -> Dict[str, dict]:
        return self.store.get(USERS_KEY) or {}

    def get(self, email: str) -> Optional[Customer]:
        doc = self._load().get(email.strip().lower())
        return Customer.model_validate(doc) if doc else None

    def _put(self, customer: Customer) -> None:
        doc = customer.model_dump(mode="json", by_alias=True)

        def apply(users):
            users[customer.email] = doc
            return users

        self.store.update(USERS_KEY, apply, default={})

    def register(self, name: str, email: str, password: str) -> Customer:
        email = email.strip().lower()
        if self.get(email):
            raise EmailTakenError()
        customer = Customer(name=name.strip(), email=email, password_hash=self.password_ctx.hash(password))
        doc = customer.model_dump(mode="json", by_alias=True)

        def apply(users):
            # re-checked under the store lock
            if email in users:
                raise EmailTakenError()
            users[email] = doc
            return users

        self.store.update(USERS_KEY, apply, default={})
        return customer

    def authenticate(self, email: str, password: str) -> Customer:
        customer = self.get(email)
        if not customer:
            self.password_ctx.dummy_verify()
            raise InvalidCredentialsError()
        if not self.password_ctx.verify(password, customer.password_hash):
            raise InvalidCredentialsError()
        return customer

    def create_token(self, customer: Customer) -> str:
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        payload = {
            "sub": customer.email,
            "iat": now,
            "exp": now + timedelta(minutes=self.jwt_expires_min),
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=JWT_ALGO)

    def decode_token(self, token: str) -> Customer:
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[JWT_ALGO])
        except jwt.ExpiredSignatureError:
            raise InvalidTokenError("Token expired")
        except jwt.InvalidTokenError:
            raise InvalidTokenError("Invalid token")
        customer = self.get(payload.get("sub") or "")
        if not customer:
            raise InvalidTokenError("User not found")
        return customer

    def save_shipping_address(self, email: str, address: ShippingAddress) -> None:
        customer = self.get(email)
        if not customer:
            return
        customer.shipping_address = address
        if address.phone:
            customer.phone = address.phone
        self._put(customer)

"""
Simulated payment handling: method validation, tokenization and UPI links.

Nothing here talks to a processor. Tokens are opaque placeholders and never
carry card data.
"""
import base64
import re
import secrets
import time
from io import BytesIO
from typing import Optional
from urllib.parse import quote

import qrcode

from schemas import CardPayment, CodPayment, NetbankingPayment, PaymentDetails, UpiPayment

EXPIRY_RE = re.compile(r"^(0[1-9]|1[0-2])/\d{2}$")
CVV_RE = re.compile(r"^[0-9]{3,4}$")
VPA_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


class PaymentValidationError(Exception):
    status_code = 400

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


def luhn_check(number: str) -> bool:
    if not number.isdigit():
        return False
    total = 0
    for i, ch in enumerate(reversed(number)):
        val = int(ch)
        if i % 2 == 1:
            val *= 2
            if val > 9:
                val -= 9
        total += val
    return total % 10 == 0


def validate_card(payment: CardPayment) -> None:
    if len(payment.holder_name.strip()) < 2:
        raise PaymentValidationError("holderName", "Please enter card holder name")
    number = re.sub(r"\s", "", payment.number.get_secret_value())
    if not 13 <= len(number) <= 19 or not number.isdigit() or not luhn_check(number):
        raise PaymentValidationError("number", "Please enter a valid card number")
    if not EXPIRY_RE.match(payment.expiry.strip()):
        raise PaymentValidationError("expiry", "Please enter expiry in MM/YY")
    if not CVV_RE.match(payment.cvv.get_secret_value()):
        raise PaymentValidationError("cvv", "Please enter a valid CVV")


def validate_upi(payment: UpiPayment) -> None:
    if not VPA_RE.match(payment.vpa.strip()):
        raise PaymentValidationError("upiId", "Please enter a valid UPI ID")


def validate_netbanking(payment: NetbankingPayment) -> None:
    if not payment.bank.strip():
        raise PaymentValidationError("bank", "Please select a bank")


def validate_payment(payment: PaymentDetails) -> None:
    if isinstance(payment, CardPayment):
        validate_card(payment)
    elif isinstance(payment, UpiPayment):
        validate_upi(payment)
    elif isinstance(payment, NetbankingPayment):
        validate_netbanking(payment)
    elif not isinstance(payment, CodPayment):
        raise PaymentValidationError("method", "Unsupported payment method")


def generate_payment_token() -> str:
    return "tok_" + secrets.token_hex(12) + base36(int(time.time() * 1000))


def base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"


def upi_link(vpa: str, payee_name: str, amount: float, note: Optional[str] = None) -> str:
    amt = str(int(amount)) if float(amount).is_integer() else f"{amount:.2f}"
    link = f"upi://pay?pa={quote(vpa, safe='')}&pn={quote(payee_name, safe='')}&am={quote(amt, safe='')}"
    if note:
        link += f"&tn={quote(note, safe='')}"
    return link


def qr_data_uri(data: str) -> str:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()

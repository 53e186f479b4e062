import re
from decimal import Decimal


PRODUCT_CATALOG = [
    # MTN
    {"product_code": "mtn-1gb", "network": "mtn", "volume_mb": 1000, "data_size": "1GB", "price": "5.50"},
    {"product_code": "mtn-2gb", "network": "mtn", "volume_mb": 2000, "data_size": "2GB", "price": "12.00"},
    {"product_code": "mtn-5gb", "network": "mtn", "volume_mb": 5000, "data_size": "5GB", "price": "27.00"},
    {"product_code": "mtn-10gb", "network": "mtn", "volume_mb": 10000, "data_size": "10GB", "price": "46.00"},
    # AirtelTigo
    {"product_code": "at-1gb", "network": "at", "volume_mb": 1000, "data_size": "1GB", "price": "5.00"},
    {"product_code": "at-2gb", "network": "at", "volume_mb": 2000, "data_size": "2GB", "price": "9.00"},
    {"product_code": "at-3gb", "network": "at", "volume_mb": 3000, "data_size": "3GB", "price": "13.00"},
    {"product_code": "at-4gb", "network": "at", "volume_mb": 4000, "data_size": "4GB", "price": "18.00"},
    {"product_code": "at-5gb", "network": "at", "volume_mb": 5000, "data_size": "5GB", "price": "20.00"},
    {"product_code": "at-10gb", "network": "at", "volume_mb": 10000, "data_size": "10GB", "price": "42.00"},
    {"product_code": "at-15gb", "network": "at", "volume_mb": 15000, "data_size": "15GB", "price": "61.50"},
    {"product_code": "at-20gb", "network": "at", "volume_mb": 20000, "data_size": "20GB", "price": "80.00"},
    {"product_code": "at-50gb", "network": "at", "volume_mb": 50000, "data_size": "50GB", "price": "140.00"},
    {"product_code": "at-100gb", "network": "at", "volume_mb": 100000, "data_size": "100GB", "price": "250.00"},
]

REFERENCE_PREFIX = {
    "mtn": "MTN_DATA",
    "at": "AT_DATA",
}

_PRODUCTS = {item["product_code"]: item for item in PRODUCT_CATALOG}
_GH_LOCAL = re.compile(r"^0[25]\d{8}$")


def normalize_product_code(value: str | None) -> str:
    return str(value or "").strip().lower()


def find_product(product_code: str | None) -> dict | None:
    return _PRODUCTS.get(normalize_product_code(product_code))


def product_price(product: dict) -> Decimal:
    return Decimal(str(product["price"]))


def reference_prefix(network: str) -> str:
    key = str(network or "").strip().lower()
    return REFERENCE_PREFIX.get(key, f"{key.upper()}_DATA" if key else "DATA")


def normalize_ghana_phone(value: str | None) -> str | None:
    """Return the local ``0XXXXXXXXX`` form, or None when the number is not a Ghanaian mobile."""
    digits = re.sub(r"[\s\-()]", "", str(value or "").strip())
    if digits.startswith("+"):
        digits = digits[1:]
    if not digits.isdigit():
        return None
    if digits.startswith("233") and len(digits) == 12:
        digits = "0" + digits[3:]
    if _GH_LOCAL.match(digits):
        return digits
    return None

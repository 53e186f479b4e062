from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from datarelay.core.config import get_settings
from datarelay.models.transaction import PurchaseIntent
from datarelay.services.catalog import find_product, normalize_ghana_phone, normalize_product_code, product_price


settings = get_settings()


class InitiatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_code: str = Field(alias="productCode")
    target_contact: str = Field(alias="targetContact")
    volume: Optional[int] = None
    amount: Decimal
    purchaser_email: str = Field(alias="purchaserEmail")

    @field_validator("product_code")
    @classmethod
    def _known_product(cls, value: str) -> str:
        code = normalize_product_code(value)
        if find_product(code) is None:
            raise ValueError(f"Unknown product code: {value}")
        return code

    @field_validator("target_contact")
    @classmethod
    def _ghana_phone(cls, value: str) -> str:
        phone = normalize_ghana_phone(value)
        if phone is None and settings.hubnet_test_mode and str(value).strip().startswith("0000"):
            # Reserved test numbers that make the simulated provider reject.
            phone = str(value).strip()
        if phone is None:
            raise ValueError("targetContact must be a valid Ghana mobile number")
        return phone

    @field_validator("purchaser_email")
    @classmethod
    def _email(cls, value: str) -> str:
        email = str(value or "").strip().lower()
        local, _, domain = email.partition("@")
        if not local or "." not in domain:
            raise ValueError("purchaserEmail must be a valid email address")
        return email

    @field_validator("amount")
    @classmethod
    def _amount_bounds(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("amount must be greater than zero")
        if value > Decimal(str(settings.max_purchase_amount)):
            raise ValueError(f"amount must not exceed {settings.max_purchase_amount}")
        return value

    @model_validator(mode="after")
    def _matches_catalog(self):
        product = find_product(self.product_code)
        if product is None:
            return self
        if self.volume is not None and int(self.volume) != int(product["volume_mb"]):
            raise ValueError(f"volume does not match product {self.product_code}")
        price = product_price(product)
        if self.amount != price:
            raise ValueError(f"amount must be {price} for product {self.product_code}")
        return self

    def to_intent(self) -> PurchaseIntent:
        product = find_product(self.product_code)
        return PurchaseIntent(
            product_code=self.product_code,
            network=product["network"],
            target_contact=self.target_contact,
            volume_mb=int(product["volume_mb"]),
            amount=self.amount,
            currency=settings.paystack_currency,
            purchaser_email=self.purchaser_email,
        )


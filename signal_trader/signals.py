from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from signal_trader.models import SignalAction

MARKET_PRICE = "market"


class SignalPayload(BaseModel):
    """Alert body delivered by the charting service for one bot."""

    # Alert templates routinely carry extra fields (strategy names, comments)
    model_config = ConfigDict(extra="ignore")

    action: SignalAction
    pair: str = Field(min_length=1)
    price: Optional[Union[float, str]] = None
    time: Optional[str] = None
    token: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def validate_action(cls, value: Any) -> SignalAction:
        if isinstance(value, SignalAction):
            return value
        return SignalAction.parse(value)

    @field_validator("pair")
    @classmethod
    def validate_pair(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Pair is required")
        return value.strip()

    @field_validator("price", mode="before")
    @classmethod
    def validate_price(cls, value: Any) -> Optional[Union[float, str]]:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            trimmed = value.strip().lower()
            if trimmed == MARKET_PRICE:
                return MARKET_PRICE
            try:
                value = float(trimmed)
            except ValueError as exc:
                raise ValueError(f"Price must be a number or 'market', got '{value}'") from exc
        price = float(value)
        if price <= 0:
            raise ValueError("Price must be positive")
        return price

    @property
    def wants_market_price(self) -> bool:
        return self.price is None or self.price == MARKET_PRICE

    @property
    def limit_price(self) -> Optional[float]:
        return None if self.wants_market_price else float(self.price)

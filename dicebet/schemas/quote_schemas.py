from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from dicebet.config import ExecutionState, QuoteProvider
from dicebet.helpers import utcnow


class ProviderPrice(BaseModel):
    """What a single quote tier answers for one request, in base units."""

    price: Decimal
    buyAmount: int
    sellAmount: int


class PriceQuote(BaseModel):
    sourceAmount: str
    targetAmount: str
    unitPrice: str
    provider: QuoteProvider
    fetchedAt: datetime = Field(default_factory=utcnow)

    @field_validator("sourceAmount", "targetAmount")
    @classmethod
    def _positive_base_units(cls, value: str) -> str:
        if not (value.isascii() and value.isdigit()) or int(value) == 0:
            raise ValueError("amount must be a positive base-unit integer string")
        return value


class SwapTicket(BaseModel):
    quote: PriceQuote
    destination: str
    calldata: str = "0x"
    value: int
    gasLimit: int
    deadline: datetime
    executionState: ExecutionState = ExecutionState.QUOTED
    txHash: Optional[str] = None


class TransactionHandle(BaseModel):
    txHash: str
    ticket: SwapTicket
    submittedAt: datetime = Field(default_factory=utcnow)


class Confirmation(BaseModel):
    txHash: str
    blockNumber: Optional[int] = None
    gasUsed: Optional[int] = None
    confirmedAt: datetime = Field(default_factory=utcnow)

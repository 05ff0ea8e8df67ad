from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from dicebet.config import WagerStatus
from dicebet.helpers import utcnow


class BetPlaced(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: Literal["BetPlaced"] = "BetPlaced"
    betId: int = Field(..., alias="id")
    player: str
    choice: int
    amount: int


class DiceRolled(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: Literal["DiceRolled"] = "DiceRolled"
    betId: int = Field(..., alias="id")
    player: str
    choice: int
    diceResult: int = Field(..., ge=1, le=6)
    isWinner: bool


class PayoutSent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: Literal["PayoutSent"] = "PayoutSent"
    betId: int = Field(..., alias="id")
    player: str
    amount: int
    isWinner: bool


LedgerEvent = Annotated[Union[BetPlaced, DiceRolled, PayoutSent], Field(discriminator="name")]


class BetRecord(BaseModel):
    """Shape returned by the ledger's getBet read."""

    player: str
    choice: int
    amount: int
    timestamp: int = 0
    isResolved: bool = False
    isWinner: bool = False
    diceResult: int = 0


class Outcome(BaseModel):
    rolledValue: int = Field(..., ge=1, le=6)
    isWinner: bool
    payout: int


class Wager(BaseModel):
    player: str = Field(..., frozen=True)
    choice: int = Field(..., ge=1, le=6)
    stake: Decimal
    stakeBaseUnits: int
    status: WagerStatus = WagerStatus.SUBMITTED
    betId: Optional[int] = None
    txHash: Optional[str] = None
    outcome: Optional[Outcome] = None
    failureReason: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class WagerHandle(BaseModel):
    player: str
    choice: int
    stakeBaseUnits: int
    status: WagerStatus
    txHash: Optional[str] = None
    betId: Optional[int] = None


class PayoutNotice(BaseModel):
    betId: int
    player: str
    amount: int
    isWinner: bool
    receivedAt: datetime = Field(default_factory=utcnow)

import asyncio
from enum import Enum
import logging
import os
import random
import uuid
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import func


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-ledger")

WEI = 10 ** 18
STARTING_BALANCE = 10 * WEI
MIN_BET_AMOUNT = WEI // 1000
MAX_BET_AMOUNT = WEI
HOUSE_BALANCE = 100 * WEI
WIN_MULTIPLIER = 2

DB_URL = os.getenv("LEDGER_DB_URL", "sqlite:///./ledger.db")
AUTO_ROLL_SECONDS = float(os.getenv("LEDGER_AUTO_ROLL_SECONDS", "0"))
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Ledger")


class EventName(str, Enum):
    BET_PLACED = "BetPlaced"
    DICE_ROLLED = "DiceRolled"
    PAYOUT_SENT = "PayoutSent"


class CallRequest(BaseModel):
    args: List[Any] = []


class SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    args: List[Any] = []
    value: int = Field(0, ge=0)
    sender: str = Field(..., alias="from")


class TransactionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(..., alias="from")
    to: str
    data: str = "0x"
    value: int = Field(0, ge=0)
    gas: int = 21000


class Bet(Base):
    __tablename__ = "bets"
    id = Column(Integer, primary_key=True)
    player = Column(String, index=True, nullable=False)
    choice = Column(Integer, nullable=False)
    amount = Column(String, nullable=False)  # wei, as a decimal string
    is_resolved = Column(Boolean, default=False, nullable=False)
    is_winner = Column(Boolean, default=False, nullable=False)
    dice_result = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Account(Base):
    __tablename__ = "accounts"
    address = Column(String, primary_key=True)
    balance = Column(String, nullable=False)


class LedgerTransaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True)
    tx_hash = Column(String, unique=True, index=True, nullable=False)
    sender = Column(String, nullable=False)
    to = Column(String, nullable=False)
    value = Column(String, nullable=False)
    gas = Column(Integer, nullable=False)
    status = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Event(Base):
    __tablename__ = "events"
    id = Column(Integer, primary_key=True)
    name = Column(String, index=True, nullable=False)
    args = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _revert(code: str, message: str, status_code: int = 400):
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _account(db: Session, address: str) -> Account:
    key = address.lower()
    account = db.get(Account, key)
    if account is None:
        account = Account(address=key, balance=str(STARTING_BALANCE))
        db.add(account)
        db.flush()
    return account


def _adjust_balance(db: Session, address: str, delta: int) -> int:
    account = _account(db, address)
    account.balance = str(int(account.balance) + delta)
    return int(account.balance)


def _emit(db: Session, name: EventName, args: dict) -> Event:
    event = Event(name=name.value, args=args)
    db.add(event)
    db.flush()
    logger.info("Emitted event=%s cursor=%s args=%s", name.value, event.id, args)
    return event


def _record_transaction(db: Session, sender: str, to: str, value: int, gas: int, status: int = 1) -> str:
    tx_hash = "0x" + uuid.uuid4().hex + uuid.uuid4().hex
    db.add(LedgerTransaction(tx_hash=tx_hash, sender=sender, to=to, value=str(value), gas=gas, status=status))
    return tx_hash


def _pending_bet(db: Session, player: str) -> Optional[Bet]:
    return (
        db.query(Bet)
        .filter(func.lower(Bet.player) == player.lower())
        .filter(Bet.is_resolved.is_(False))
        .first()
    )


def _serialize_bet(bet: Bet) -> dict:
    return {
        "player": bet.player,
        "choice": bet.choice,
        "amount": int(bet.amount),
        "timestamp": int(bet.created_at.timestamp()) if bet.created_at else 0,
        "isResolved": bet.is_resolved,
        "isWinner": bet.is_winner,
        "diceResult": bet.dice_result,
    }


def _check_sender(sender: str):
    if sender.endswith("_reject"):
        logger.warning("Simulating user rejection for sender=%s", sender)
        _revert("USER_REJECTED", "user rejected the request", status_code=403)


def resolve_bet(db: Session, bet_id: int, result: Optional[int] = None) -> Bet:
    bet = db.get(Bet, bet_id)
    if bet is None:
        raise HTTPException(status_code=404, detail="bet not found")
    if bet.is_resolved:
        return bet
    dice = result if result is not None else random.randint(1, 6)
    bet.dice_result = dice
    bet.is_winner = dice == bet.choice
    bet.is_resolved = True
    _emit(db, EventName.DICE_ROLLED, {
        "id": bet.id,
        "player": bet.player,
        "choice": bet.choice,
        "diceResult": dice,
        "isWinner": bet.is_winner,
    })
    if bet.is_winner:
        payout = int(bet.amount) * WIN_MULTIPLIER
        _adjust_balance(db, bet.player, payout)
        _emit(db, EventName.PAYOUT_SENT, {"id": bet.id, "player": bet.player, "amount": payout, "isWinner": True})
    db.commit()
    return bet


async def _auto_roll(bet_id: int):
    await asyncio.sleep(AUTO_ROLL_SECONDS)
    db = SessionLocal()
    try:
        resolve_bet(db, bet_id)
    except Exception:
        logger.exception("Auto roll failed for bet_id=%s", bet_id)
    finally:
        db.close()


@app.post("/call/{method}")
async def call(method: str, body: CallRequest, db: Session = Depends(get_db)):
    if method == "getMinBetAmount":
        return {"result": MIN_BET_AMOUNT}
    if method == "getMaxBetAmount":
        return {"result": MAX_BET_AMOUNT}
    if method == "getContractBalance":
        return {"result": HOUSE_BALANCE}
    if method == "getPendingBet":
        if not body.args:
            _revert("REVERTED", "player argument required")
        bet = _pending_bet(db, str(body.args[0]))
        return {"result": bet.id if bet else 0}
    if method == "getBet":
        if not body.args:
            _revert("REVERTED", "bet id argument required")
        bet = db.get(Bet, int(body.args[0]))
        if bet is None:
            _revert("REVERTED", "Bet does not exist")
        return {"result": _serialize_bet(bet)}
    _revert("UNKNOWN_METHOD", f"unknown read method {method}", status_code=404)


@app.post("/send/{method}")
async def send(method: str, body: SendRequest, db: Session = Depends(get_db)):
    if method != "placeBet":
        _revert("UNKNOWN_METHOD", f"unknown method {method}", status_code=404)
    _check_sender(body.sender)
    logger.info("Received placeBet from=%s args=%s value=%s", body.sender, body.args, body.value)
    choice = int(body.args[0]) if body.args else 0
    if not 1 <= choice <= 6:
        _revert("REVERTED", "Choice must be between 1 and 6")
    if body.value < MIN_BET_AMOUNT:
        _revert("REVERTED", "Bet amount too low")
    if body.value > MAX_BET_AMOUNT:
        _revert("REVERTED", "Bet amount too high")
    if _pending_bet(db, body.sender):
        _revert("REVERTED", "You already have a pending bet")
    if int(_account(db, body.sender).balance) < body.value:
        _revert("INSUFFICIENT_FUNDS", "insufficient funds for bet")

    _adjust_balance(db, body.sender, -body.value)
    bet = Bet(player=body.sender, choice=choice, amount=str(body.value))
    db.add(bet)
    db.flush()
    tx_hash = _record_transaction(db, body.sender, "dice", body.value, 100000)
    _emit(db, EventName.BET_PLACED, {"id": bet.id, "player": bet.player, "choice": choice, "amount": body.value})
    db.commit()
    if AUTO_ROLL_SECONDS > 0:
        asyncio.create_task(_auto_roll(bet.id))
    return {"txHash": tx_hash}


@app.post("/transactions")
async def submit_transaction(body: TransactionRequest, db: Session = Depends(get_db)):
    _check_sender(body.sender)
    logger.info("Received transaction from=%s to=%s value=%s gas=%s", body.sender, body.to, body.value, body.gas)
    if int(_account(db, body.sender).balance) < body.value:
        _revert("INSUFFICIENT_FUNDS", "insufficient funds for transfer")
    _adjust_balance(db, body.sender, -body.value)
    _adjust_balance(db, body.to, body.value)
    tx_hash = _record_transaction(db, body.sender, body.to, body.value, body.gas)
    db.commit()
    return {"txHash": tx_hash}


@app.get("/transactions/{tx_hash}/receipt")
async def receipt(tx_hash: str, db: Session = Depends(get_db)):
    txn = db.query(LedgerTransaction).filter(LedgerTransaction.tx_hash == tx_hash).first()
    if not txn:
        raise HTTPException(status_code=404, detail="receipt not found")
    return {"txHash": txn.tx_hash, "status": txn.status, "blockNumber": txn.id, "gasUsed": txn.gas}


@app.get("/balances/{address}")
async def balance(address: str, db: Session = Depends(get_db)):
    account = _account(db, address)
    db.commit()
    return {"address": account.address, "balance": int(account.balance)}


@app.get("/events/head")
async def events_head(db: Session = Depends(get_db)):
    head = db.query(func.max(Event.id)).scalar()
    return {"cursor": head or 0}


@app.get("/events")
async def list_events(
    name: Optional[EventName] = None,
    after: int = 0,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    query = db.query(Event).filter(Event.id > after)
    if name:
        query = query.filter(Event.name == name.value)
    records = query.order_by(Event.id).limit(limit).all()
    return [{"cursor": e.id, "name": e.name, "args": e.args} for e in records]


@app.post("/admin/roll/{bet_id}")
async def force_roll(bet_id: int, result: Optional[int] = Query(None, ge=1, le=6), db: Session = Depends(get_db)):
    """
    Resolve a pending bet now, optionally with a fixed dice result.
    """
    bet = resolve_bet(db, bet_id, result)
    return _serialize_bet(bet)


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all bets, balances, transactions and events.
    """
    db.query(Event).delete()
    db.query(LedgerTransaction).delete()
    db.query(Bet).delete()
    db.query(Account).delete()
    db.commit()
    logger.warning("Cleared mock ledger state via admin endpoint")
    return {"status": "cleared"}

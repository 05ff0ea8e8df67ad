import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dicebet.clients.ledger_client import Subscription  # noqa: E402

WEI = 10 ** 18
PLAYER = "0xA11CE00000000000000000000000000000000001"


class FakeGateway:
    """In-memory ChainGateway that records every interaction."""

    def __init__(self, account=PLAYER, balance=10 * WEI):
        self.account = account
        self.balance = balance
        self.calls = []
        self.sent = []
        self.transactions = []
        self.handlers = {}
        self.receipts = {}
        self.reads = {
            "getMinBetAmount": WEI // 1000,
            "getMaxBetAmount": WEI,
            "getPendingBet": 0,
            "getContractBalance": 100 * WEI,
        }
        self.send_error = None
        self.transaction_error = None
        self.auto_receipt = True
        self.before_send = None

    async def call(self, method, args):
        self.calls.append(("call", method, list(args)))
        value = self.reads[method]
        if isinstance(value, Exception):
            raise value
        return value

    async def send(self, method, args, value=0):
        self.calls.append(("send", method, list(args), value))
        if self.before_send is not None:
            self.before_send()
        if self.send_error is not None:
            raise self.send_error
        tx_hash = f"0xbet{len(self.sent)}"
        self.sent.append((method, list(args), value))
        if self.auto_receipt:
            self.receipts[tx_hash] = {"status": 1, "blockNumber": 100 + len(self.sent), "gasUsed": 90000}
        return tx_hash

    async def send_transaction(self, to, data, value, gas):
        self.calls.append(("send_transaction", to, data, value, gas))
        if self.transaction_error is not None:
            raise self.transaction_error
        tx_hash = f"0xswap{len(self.transactions)}"
        self.transactions.append((to, data, value, gas))
        if self.auto_receipt:
            self.receipts[tx_hash] = {"status": 1, "blockNumber": 200, "gasUsed": gas}
        return tx_hash

    async def get_transaction_receipt(self, tx_hash):
        self.calls.append(("receipt", tx_hash))
        return self.receipts.get(tx_hash)

    async def get_balance(self, account):
        self.calls.append(("balance", account))
        return self.balance

    def subscribe(self, event_name, handler):
        self.handlers.setdefault(event_name, []).append(handler)
        return Subscription(event_name, lambda: self.handlers[event_name].remove(handler))

    def emit(self, event_name, **args):
        for handler in list(self.handlers.get(event_name, [])):
            handler(args)


@pytest.fixture
def gateway():
    return FakeGateway()

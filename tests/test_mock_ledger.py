import asyncio
import os
from importlib import reload

import httpx
import pytest
from fastapi.testclient import TestClient

from dicebet.clients.ledger_client import HttpChainGateway
from dicebet.config import WagerStatus
from dicebet.coordinator import BetLifecycleCoordinator
from dicebet.errors import RejectionReason

WEI = 10 ** 18
STAKE_WEI = 5 * 10 ** 16
PLAYER = "0xA11CE00000000000000000000000000000000001"


@pytest.fixture(scope="function")
def ledger_module(tmp_path_factory):
    """
    Reload the mock ledger with a disposable SQLite DB and auto-roll disabled.
    """
    db_path = tmp_path_factory.mktemp("ledger") / "ledger.db"
    new_env = {
        "LEDGER_DB_URL": f"sqlite:///{db_path}",
        "LEDGER_AUTO_ROLL_SECONDS": "0",
    }
    old_env = {k: os.environ.get(k) for k in new_env}
    os.environ.update(new_env)
    try:
        import mock_ledger.main as main

        reload(main)
        main.Base.metadata.drop_all(bind=main.engine)
        main.Base.metadata.create_all(bind=main.engine)
        return main
    finally:
        for key, value in old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


@pytest.fixture
def client(ledger_module):
    with TestClient(ledger_module.app) as client:
        yield client


def place_bet(client, sender=PLAYER, choice=4, value=STAKE_WEI):
    return client.post("/send/placeBet", json={"args": [choice], "value": value, "from": sender})


def test_reads_expose_limits_and_house_balance(client):
    assert client.post("/call/getMinBetAmount", json={"args": []}).json() == {"result": WEI // 1000}
    assert client.post("/call/getMaxBetAmount", json={"args": []}).json() == {"result": WEI}
    assert client.post("/call/getContractBalance", json={"args": []}).json()["result"] == 100 * WEI
    resp = client.post("/call/getSomethingElse", json={"args": []})
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "UNKNOWN_METHOD"


def test_place_bet_records_pending_bet_and_event(client):
    resp = place_bet(client)
    assert resp.status_code == 200
    tx_hash = resp.json()["txHash"]

    pending = client.post("/call/getPendingBet", json={"args": [PLAYER.lower()]}).json()["result"]
    assert pending == 1
    bet = client.post("/call/getBet", json={"args": [1]}).json()["result"]
    assert bet["amount"] == STAKE_WEI
    assert bet["isResolved"] is False

    events = client.get("/events", params={"name": "BetPlaced", "after": 0}).json()
    assert [e["args"] for e in events] == [{"id": 1, "player": PLAYER, "choice": 4, "amount": STAKE_WEI}]
    assert client.get("/events/head").json() == {"cursor": events[0]["cursor"]}

    receipt = client.get(f"/transactions/{tx_hash}/receipt").json()
    assert receipt["status"] == 1
    assert client.get(f"/balances/{PLAYER}").json()["balance"] == 10 * WEI - STAKE_WEI


def test_one_pending_bet_per_player(client):
    assert place_bet(client).status_code == 200
    resp = place_bet(client, choice=2)
    assert resp.status_code == 400
    assert resp.json()["detail"] == {"code": "REVERTED", "message": "You already have a pending bet"}


@pytest.mark.parametrize(
    "choice, value, message",
    [
        (0, STAKE_WEI, "Choice must be between 1 and 6"),
        (7, STAKE_WEI, "Choice must be between 1 and 6"),
        (3, WEI // 10000, "Bet amount too low"),
        (3, 2 * WEI, "Bet amount too high"),
    ],
)
def test_place_bet_reverts_on_bad_input(client, choice, value, message):
    resp = place_bet(client, choice=choice, value=value)
    assert resp.status_code == 400
    assert resp.json()["detail"]["message"] == message


def test_rejecting_sender_simulates_declined_prompt(client):
    resp = place_bet(client, sender="0xplayer_reject")
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "USER_REJECTED"


def test_winning_roll_emits_dice_and_payout(client):
    place_bet(client)
    rolled = client.post("/admin/roll/1", params={"result": 4}).json()
    assert rolled["isWinner"] is True
    assert rolled["diceResult"] == 4

    dice = client.get("/events", params={"name": "DiceRolled"}).json()
    payouts = client.get("/events", params={"name": "PayoutSent"}).json()
    assert dice[0]["args"]["diceResult"] == 4
    assert payouts[0]["args"] == {"id": 1, "player": PLAYER, "amount": 2 * STAKE_WEI, "isWinner": True}
    assert client.get(f"/balances/{PLAYER}").json()["balance"] == 10 * WEI + STAKE_WEI
    assert client.post("/call/getPendingBet", json={"args": [PLAYER]}).json()["result"] == 0


def test_losing_roll_has_no_payout(client):
    place_bet(client)
    client.post("/admin/roll/1", params={"result": 2})
    assert client.get("/events", params={"name": "PayoutSent"}).json() == []
    # Rolling again does not emit a second DiceRolled.
    client.post("/admin/roll/1", params={"result": 4})
    assert len(client.get("/events", params={"name": "DiceRolled"}).json()) == 1


def test_transfer_transaction(client):
    resp = client.post("/transactions", json={"from": PLAYER, "to": "0xrouter", "value": WEI, "gas": 200000})
    tx_hash = resp.json()["txHash"]
    assert client.get(f"/transactions/{tx_hash}/receipt").json()["gasUsed"] == 200000
    assert client.get("/balances/0xrouter").json()["balance"] == 11 * WEI
    assert client.get("/transactions/0xmissing/receipt").status_code == 404


def test_clear_db(client):
    place_bet(client)
    assert client.post("/admin/clear-db").json() == {"status": "cleared"}
    assert client.get("/events/head").json() == {"cursor": 0}


def test_coordinator_round_trip_against_mock_ledger(ledger_module):
    app = ledger_module.app

    async def scenario():
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://ledger.test")
        gateway = HttpChainGateway(account=PLAYER, client=http, poll_interval_seconds=0.01)
        coordinator = BetLifecycleCoordinator(gateway, confirmation_timeout_seconds=2, receipt_poll_interval_seconds=0.01)
        async with coordinator:
            # Let each subscription read the event head first.
            await asyncio.sleep(0.1)
            placed = await coordinator.place_bet(4, "0.05")
            second = await coordinator.place_bet(3, "0.05")

            for _ in range(100):
                if coordinator.current_wager().betId is not None:
                    break
                await asyncio.sleep(0.01)
            await http.post("/admin/roll/1", params={"result": 4})
            for _ in range(100):
                if coordinator.current_wager().status == WagerStatus.RESOLVED and coordinator.last_payout:
                    break
                await asyncio.sleep(0.01)
            wager = coordinator.current_wager()
            payout = coordinator.last_payout
        await gateway.aclose()
        return placed, second, wager, payout

    placed, second, wager, payout = asyncio.run(scenario())
    assert placed.ok
    assert second.error.reason == RejectionReason.PENDING_BET_EXISTS
    assert wager.betId == 1
    assert wager.status == WagerStatus.RESOLVED
    assert wager.outcome.rolledValue == 4
    assert wager.outcome.isWinner is True
    assert payout.amount == 2 * STAKE_WEI

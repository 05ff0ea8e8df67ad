import asyncio
from typing import Any, Callable, Optional, Protocol

import httpx

from dicebet.config import settings
from dicebet.errors import LedgerError, LedgerErrorCode
from dicebet.logging_config import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[dict], None]


class Subscription:
    """Handle for one event registration; release it with unsubscribe()."""

    def __init__(self, event_name: str, release: Callable[[], None]):
        self.event_name = event_name
        self._release: Optional[Callable[[], None]] = release

    @property
    def active(self) -> bool:
        return self._release is not None

    def unsubscribe(self) -> None:
        if self._release is None:
            return
        release, self._release = self._release, None
        release()


class ChainGateway(Protocol):
    account: Optional[str]

    async def call(self, method: str, args: list[Any]) -> Any: ...

    async def send(self, method: str, args: list[Any], value: int = 0) -> str: ...

    def subscribe(self, event_name: str, handler: EventHandler) -> Subscription: ...

    async def get_balance(self, account: str) -> int: ...

    async def send_transaction(self, to: str, data: str, value: int, gas: int) -> str: ...

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]: ...


def _ledger_error(response: httpx.Response) -> LedgerError:
    code = LedgerErrorCode.UNAVAILABLE.value
    message = response.text
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    if isinstance(detail, dict):
        code = detail.get("code") or code
        message = detail.get("message") or message
    elif isinstance(detail, str):
        message = detail
    return LedgerError(code, message, status_code=response.status_code)


def _body(response: httpx.Response, expected: type = dict) -> Any:
    """Decoded 200 body; anything unexpected is reported as an unavailable ledger."""
    if response.status_code != 200:
        raise _ledger_error(response)
    try:
        data = response.json()
    except ValueError as exc:
        raise LedgerError(LedgerErrorCode.UNAVAILABLE.value, "ledger body is not json", status_code=200) from exc
    if not isinstance(data, expected):
        raise LedgerError(
            LedgerErrorCode.UNAVAILABLE.value, f"unexpected ledger body {type(data).__name__}", status_code=200
        )
    return data


def _field(data: dict, key: str, cast: Callable[[Any], Any] = lambda value: value) -> Any:
    try:
        return cast(data[key])
    except (KeyError, TypeError, ValueError) as exc:
        raise LedgerError(LedgerErrorCode.UNAVAILABLE.value, f"malformed ledger field {key!r}: {exc!r}", status_code=200) from exc


class HttpChainGateway:
    """
    ChainGateway over the ledger relay's JSON API.

    Reads retry on 429/5xx with exponential backoff. Sends go out exactly once:
    a failed broadcast is reported to the caller and never replayed here.
    Malformed response bodies surface as LedgerError(UNAVAILABLE).

    All subscriptions share one poller that walks the ledger's event log in
    cursor order, so events are delivered in the order they were recorded
    (BetPlaced before the DiceRolled for the same bet).
    """

    def __init__(
        self,
        account: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ):
        base_url = base_url if base_url is not None else str(settings.ledger_base_url)
        self.client = client if client is not None else httpx.AsyncClient(base_url=base_url, timeout=settings.http_timeout_seconds)
        self.account = account if account is not None else settings.player_account
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds
        self.poll_interval_seconds = poll_interval_seconds if poll_interval_seconds is not None else settings.event_poll_interval_seconds
        self._handlers: dict[str, list[EventHandler]] = {}
        self._poller: Optional[asyncio.Task] = None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            raise LedgerError(LedgerErrorCode.UNAVAILABLE.value, f"ledger request error: {exc}") from exc

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        while True:
            response = await self._request(method, url, **kwargs)
            if response.status_code == 429 or response.status_code >= 500:
                if retries >= self.max_retries:
                    return response
                retry_after = response.headers.get("Retry-After") if response.status_code == 429 else None
                await asyncio.sleep(float(retry_after) if retry_after else backoff)
                retries += 1
                backoff *= 2
                continue
            return response

    async def call(self, method: str, args: list[Any]) -> Any:
        resp = await self._request_with_retry("POST", f"/call/{method}", json={"args": list(args)})
        return _body(resp).get("result")

    async def send(self, method: str, args: list[Any], value: int = 0) -> str:
        if not self.account:
            raise LedgerError(LedgerErrorCode.USER_REJECTED.value, "no signing account connected")
        payload = {"args": list(args), "value": int(value), "from": self.account}
        resp = await self._request("POST", f"/send/{method}", json=payload)
        tx_hash = _field(_body(resp), "txHash", str)
        logger.info("Ledger send method=%s from=%s value=%s tx=%s", method, self.account, value, tx_hash)
        return tx_hash

    async def send_transaction(self, to: str, data: str, value: int, gas: int) -> str:
        if not self.account:
            raise LedgerError(LedgerErrorCode.USER_REJECTED.value, "no signing account connected")
        payload = {"from": self.account, "to": to, "data": data, "value": int(value), "gas": int(gas)}
        resp = await self._request("POST", "/transactions", json=payload)
        tx_hash = _field(_body(resp), "txHash", str)
        logger.info("Ledger transaction submitted from=%s to=%s value=%s tx=%s", self.account, to, value, tx_hash)
        return tx_hash

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        resp = await self._request_with_retry("GET", f"/transactions/{tx_hash}/receipt")
        if resp.status_code == 404:
            return None
        receipt = _body(resp)
        receipt["status"] = _field(receipt, "status", int)
        return receipt

    async def get_balance(self, account: str) -> int:
        resp = await self._request_with_retry("GET", f"/balances/{account}")
        return _field(_body(resp), "balance", int)

    async def _head_cursor(self) -> int:
        resp = await self._request_with_retry("GET", "/events/head")
        return _field(_body(resp), "cursor", int)

    async def poll_events(self, after: int, event_name: str | None = None) -> list[dict]:
        params: dict[str, Any] = {"after": after}
        if event_name is not None:
            params["name"] = event_name
        resp = await self._request_with_retry("GET", "/events", params=params)
        return _body(resp, list)

    def _dispatch(self, record: dict):
        for handler in list(self._handlers.get(record["name"], [])):
            try:
                handler(record["args"])
            except Exception:  # noqa: BLE001
                logger.exception("Event handler failed event=%s cursor=%s", record["name"], record["cursor"])

    async def _event_worker(self):
        cursor: Optional[int] = None
        while True:
            try:
                if cursor is None:
                    cursor = await self._head_cursor()
                for record in await self.poll_events(cursor):
                    cursor = max(cursor, int(record["cursor"]))
                    self._dispatch(record)
            except (LedgerError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Event poll failed cursor=%s error=%s", cursor, exc)
            await asyncio.sleep(self.poll_interval_seconds)

    def subscribe(self, event_name: str, handler: EventHandler) -> Subscription:
        """
        Start delivering events of one kind to handler.

        Must be called from a running event loop. Delivery starts at the
        ledger's event head when the first subscription opens the poller.
        """
        self._handlers.setdefault(event_name, []).append(handler)
        if self._poller is None or self._poller.done():
            self._poller = asyncio.get_running_loop().create_task(self._event_worker())
        logger.info("Subscribed to ledger event=%s", event_name)

        def release():
            handlers = self._handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)
            if not any(self._handlers.values()):
                self._stop_poller()
            logger.info("Unsubscribed from ledger event=%s", event_name)

        return Subscription(event_name, release)

    def _stop_poller(self):
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None

    async def aclose(self):
        self._handlers.clear()
        self._stop_poller()
        await self.client.aclose()

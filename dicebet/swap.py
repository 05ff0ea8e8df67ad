import asyncio
from datetime import timedelta
from typing import Optional

from dicebet.clients.ledger_client import ChainGateway
from dicebet.config import BASE_ASSET, STABLE_ASSET, Asset, ExecutionState, settings
from dicebet.errors import ExecutionError, ExecutionFailure, LedgerError, LedgerErrorCode
from dicebet.helpers import receipt_status, utcnow
from dicebet.logging_config import get_logger
from dicebet.results import Result
from dicebet.schemas.quote_schemas import Confirmation, PriceQuote, SwapTicket, TransactionHandle

logger = get_logger(__name__)


class SwapExecutor:
    """
    Submits accepted quotes as transactions and tracks their inclusion.

    One transaction per ticket. A failed or timed-out submission is reported,
    never resubmitted; the user decides whether to build a fresh ticket.
    """

    def __init__(
        self,
        gateway: Optional[ChainGateway],
        router_address: str | None = None,
        gas_limit: int | None = None,
        deadline_seconds: int | None = None,
        confirmation_timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ):
        self.gateway = gateway
        self.router_address = router_address if router_address is not None else settings.swap_router_address
        self.gas_limit = gas_limit if gas_limit is not None else settings.swap_gas_limit
        self.deadline_seconds = deadline_seconds if deadline_seconds is not None else settings.swap_deadline_seconds
        self.confirmation_timeout_seconds = (
            confirmation_timeout_seconds if confirmation_timeout_seconds is not None else settings.confirmation_timeout_seconds
        )
        self.poll_interval_seconds = poll_interval_seconds if poll_interval_seconds is not None else settings.receipt_poll_interval_seconds

    @staticmethod
    def is_supported(source: Asset, target: Asset) -> bool:
        return source.address.lower() == BASE_ASSET.address.lower() and target.address.lower() == STABLE_ASSET.address.lower()

    @property
    def signer(self) -> Optional[str]:
        if self.gateway is None:
            return None
        return self.gateway.account

    def build_ticket(self, quote: PriceQuote, destination: str | None = None) -> SwapTicket:
        # Without a router the native amount goes to the signer's own account.
        to = destination or self.router_address or self.signer or ""
        return SwapTicket(
            quote=quote,
            destination=to,
            value=int(quote.sourceAmount),
            gasLimit=self.gas_limit,
            deadline=utcnow() + timedelta(seconds=self.deadline_seconds),
        )

    def _fail(self, ticket: SwapTicket, kind: ExecutionFailure, message: str) -> Result[TransactionHandle, ExecutionError]:
        ticket.executionState = ExecutionState.FAILED
        logger.warning("Swap submission failed kind=%s provider=%s reason=%s", kind.value, ticket.quote.provider.value, message)
        return Result.failure(ExecutionError(kind, message))

    async def submit(self, ticket: SwapTicket) -> Result[TransactionHandle, ExecutionError]:
        if not self.signer:
            # The ticket stays quoted; it can be submitted once a signer connects.
            return Result.failure(ExecutionError(ExecutionFailure.SIGNER_UNAVAILABLE, "no signing identity connected"))
        if ticket.executionState != ExecutionState.QUOTED:
            return Result.failure(
                ExecutionError(ExecutionFailure.SUBMISSION_FAILED, f"ticket already {ticket.executionState.value}")
            )
        if not ticket.destination:
            return self._fail(ticket, ExecutionFailure.SUBMISSION_FAILED, "ticket has no destination")
        if utcnow() >= ticket.deadline:
            return self._fail(ticket, ExecutionFailure.SUBMISSION_FAILED, "quote deadline passed")

        ticket.executionState = ExecutionState.SUBMITTED
        try:
            tx_hash = await self.gateway.send_transaction(ticket.destination, ticket.calldata, ticket.value, ticket.gasLimit)
        except LedgerError as exc:
            if exc.code == LedgerErrorCode.USER_REJECTED.value:
                return self._fail(ticket, ExecutionFailure.REJECTED, exc.message)
            return self._fail(ticket, ExecutionFailure.SUBMISSION_FAILED, exc.message)
        except Exception as exc:  # noqa: BLE001
            return self._fail(ticket, ExecutionFailure.SUBMISSION_FAILED, repr(exc))

        ticket.txHash = tx_hash
        logger.info(
            "Swap submitted tx=%s value=%s target_amount=%s provider=%s",
            tx_hash,
            ticket.value,
            ticket.quote.targetAmount,
            ticket.quote.provider.value,
        )
        return Result.success(TransactionHandle(txHash=tx_hash, ticket=ticket))

    async def _wait_for_receipt(self, tx_hash: str) -> dict:
        while True:
            try:
                receipt = await self.gateway.get_transaction_receipt(tx_hash)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Receipt lookup failed tx=%s error=%r", tx_hash, exc)
                receipt = None
            if receipt is not None:
                if receipt_status(receipt) is not None:
                    return receipt
                logger.warning("Ignoring malformed receipt tx=%s receipt=%r", tx_hash, receipt)
            await asyncio.sleep(self.poll_interval_seconds)

    async def await_confirmation(self, handle: TransactionHandle, timeout: float | None = None) -> Result[Confirmation, ExecutionError]:
        ticket = handle.ticket
        limit = timeout if timeout is not None else self.confirmation_timeout_seconds
        try:
            receipt = await asyncio.wait_for(self._wait_for_receipt(handle.txHash), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Swap confirmation timed out tx=%s timeout=%s", handle.txHash, limit)
            return Result.failure(ExecutionError(ExecutionFailure.TIMEOUT, f"no receipt for {handle.txHash} after {limit}s"))

        if receipt_status(receipt) != 1:
            ticket.executionState = ExecutionState.FAILED
            logger.warning("Swap reverted tx=%s block=%s", handle.txHash, receipt.get("blockNumber"))
            return Result.failure(ExecutionError(ExecutionFailure.REVERTED, f"transaction {handle.txHash} reverted"))

        ticket.executionState = ExecutionState.CONFIRMED
        logger.info("Swap confirmed tx=%s block=%s", handle.txHash, receipt.get("blockNumber"))
        return Result.success(
            Confirmation(txHash=handle.txHash, blockNumber=receipt.get("blockNumber"), gasUsed=receipt.get("gasUsed"))
        )

import asyncio
from decimal import Decimal
from typing import Any, Callable, Optional, Union

from pydantic import TypeAdapter
from pydantic import ValidationError as SchemaError

from dicebet.clients.ledger_client import ChainGateway, Subscription
from dicebet.config import (
    BASE_ASSET,
    MAX_CHOICE,
    MIN_CHOICE,
    TERMINAL_WAGER_STATUSES,
    LedgerEventName,
    WagerStatus,
    settings,
)
from dicebet.errors import (
    BetRejection,
    LedgerError,
    LedgerErrorCode,
    ProtocolViolation,
    RejectionReason,
    ValidationError,
)
from dicebet.helpers import receipt_status, same_account, to_base_units, utcnow
from dicebet.logging_config import get_logger
from dicebet.results import Result
from dicebet.schemas.ledger_schemas import (
    BetPlaced,
    BetRecord,
    DiceRolled,
    LedgerEvent,
    Outcome,
    PayoutNotice,
    PayoutSent,
    Wager,
    WagerHandle,
)

logger = get_logger(__name__)

event_adapter: TypeAdapter = TypeAdapter(LedgerEvent)

PayoutListener = Callable[[PayoutNotice], None]


def parse_ledger_event(name: str, args: dict) -> Union[BetPlaced, DiceRolled, PayoutSent]:
    return event_adapter.validate_python({**args, "name": name})


def _rejection_for(exc: LedgerError) -> BetRejection:
    if exc.code == LedgerErrorCode.USER_REJECTED.value:
        return BetRejection(RejectionReason.USER_REJECTED, exc.message)
    if exc.code == LedgerErrorCode.INSUFFICIENT_FUNDS.value:
        return BetRejection(RejectionReason.INSUFFICIENT_BALANCE, exc.message)
    return BetRejection(RejectionReason.LEDGER_UNAVAILABLE, exc.message)


class BetLifecycleCoordinator:
    """
    Single source of truth for one player's current wager.

    Transitions:
        None -> Submitted             local validation passed, before any ledger call
        Submitted -> AwaitingConfirmation   placeBet broadcast
        Submitted|AwaitingConfirmation -> AwaitingResolution   BetPlaced echo or receipt
        AwaitingResolution -> Resolved       DiceRolled for the bet id BetPlaced reported,
                                             or the resolved bet record via reconcile()
        Submitted|AwaitingConfirmation -> Failed   ledger failure before acknowledgement
        terminal -> None              reset() / detach()

    Event handlers are synchronous and only ever touch the wager they can key
    to by player, stake and ledger bet id. A DiceRolled that beats its BetPlaced
    is held until the bet id is known. Anything else is logged and dropped.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        player: str | None = None,
        on_payout: Optional[PayoutListener] = None,
        confirmation_timeout_seconds: float | None = None,
        receipt_poll_interval_seconds: float | None = None,
    ):
        player = player if player is not None else gateway.account
        if not player:
            raise ValueError("a coordinator needs a player account")
        self.gateway = gateway
        self.player = player
        self.on_payout = on_payout
        self.confirmation_timeout_seconds = (
            confirmation_timeout_seconds if confirmation_timeout_seconds is not None else settings.confirmation_timeout_seconds
        )
        self.receipt_poll_interval_seconds = (
            receipt_poll_interval_seconds if receipt_poll_interval_seconds is not None else settings.receipt_poll_interval_seconds
        )
        self.min_stake = to_base_units(settings.default_min_stake, BASE_ASSET.decimals)
        self.max_stake = to_base_units(settings.default_max_stake, BASE_ASSET.decimals)
        self.last_payout: Optional[PayoutNotice] = None
        self._wager: Optional[Wager] = None
        # DiceRolled seen before the BetPlaced that tells us its bet id.
        self._early_rolls: dict[int, DiceRolled] = {}
        self._subscriptions: list[Subscription] = []

    # -- session ---------------------------------------------------------

    async def __aenter__(self) -> "BetLifecycleCoordinator":
        await self.attach()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.detach()

    async def attach(self):
        if not self._subscriptions:
            for event_name in LedgerEventName:
                self._subscriptions.append(self.gateway.subscribe(event_name.value, self._handler_for(event_name.value)))
        await self.refresh_limits()
        await self.resume()

    def detach(self):
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self._wager = None
        self._early_rolls.clear()
        logger.info("Coordinator detached player=%s", self.player)

    def _handler_for(self, event_name: str) -> Callable[[dict], None]:
        def handle(args: dict):
            try:
                event = parse_ledger_event(event_name, args)
            except SchemaError as exc:
                logger.warning("Dropping malformed ledger event=%s args=%s error=%s", event_name, args, exc)
                return
            self.on_ledger_event(event)

        return handle

    async def refresh_limits(self) -> bool:
        """Cache min/max stake from the ledger; keep the current limits on failure."""
        try:
            min_stake = int(await self.gateway.call("getMinBetAmount", []))
            max_stake = int(await self.gateway.call("getMaxBetAmount", []))
        except (LedgerError, TypeError, ValueError) as exc:
            logger.warning("Could not refresh stake limits, keeping min=%s max=%s error=%s", self.min_stake, self.max_stake, exc)
            return False
        self.min_stake, self.max_stake = min_stake, max_stake
        logger.info("Stake limits refreshed min=%s max=%s", min_stake, max_stake)
        return True

    async def resume(self) -> Optional[Wager]:
        """Pick up a bet the ledger still has pending for this player."""
        if self._wager is not None and self._wager.status not in TERMINAL_WAGER_STATUSES:
            return await self.reconcile()
        try:
            bet_id = int(await self.gateway.call("getPendingBet", [self.player]) or 0)
            if bet_id <= 0:
                return None
            record = BetRecord.model_validate(await self.gateway.call("getBet", [bet_id]))
            if record.isResolved or not same_account(record.player, self.player):
                return None
            wager = Wager(
                player=self.player,
                choice=record.choice,
                stake=Decimal(record.amount).scaleb(-BASE_ASSET.decimals),
                stakeBaseUnits=record.amount,
                status=WagerStatus.AWAITING_RESOLUTION,
                betId=bet_id,
            )
        except (LedgerError, SchemaError, TypeError, ValueError) as exc:
            logger.warning("Could not check pending bet player=%s error=%s", self.player, exc)
            return None
        self._wager = wager
        logger.info("Resumed pending bet bet_id=%s player=%s", bet_id, self.player)
        return self.current_wager()

    async def reconcile(self) -> Optional[Wager]:
        """
        Resolve a wager stuck in AwaitingResolution from the ledger's own bet
        record, for when its DiceRolled event was missed.
        """
        wager = self._wager
        if wager is None or wager.status != WagerStatus.AWAITING_RESOLUTION or wager.betId is None:
            return self.current_wager()
        bet_id = wager.betId
        try:
            record = BetRecord.model_validate(await self.gateway.call("getBet", [bet_id]))
            if not record.isResolved:
                return self.current_wager()
            if not same_account(record.player, self.player):
                raise ProtocolViolation(f"bet {bet_id} belongs to {record.player}")
            event = DiceRolled(
                betId=bet_id,
                player=record.player,
                choice=record.choice,
                diceResult=record.diceResult,
                isWinner=record.isWinner,
            )
        except (LedgerError, SchemaError, ProtocolViolation) as exc:
            logger.warning("Could not reconcile bet bet_id=%s player=%s error=%s", bet_id, self.player, exc)
            return self.current_wager()
        if self.on_ledger_event(event):
            logger.info("Reconciled missed DiceRolled from bet record bet_id=%s", bet_id)
        return self.current_wager()

    async def house_balance(self) -> Result[int, LedgerError]:
        try:
            return Result.success(int(await self.gateway.call("getContractBalance", [])))
        except LedgerError as exc:
            return Result.failure(exc)
        except (TypeError, ValueError) as exc:
            return Result.failure(LedgerError(LedgerErrorCode.UNAVAILABLE.value, f"malformed balance: {exc}"))

    # -- reads -----------------------------------------------------------

    def current_wager(self) -> Optional[Wager]:
        return self._wager.model_copy(deep=True) if self._wager is not None else None

    def has_pending_bet(self) -> bool:
        return self._wager is not None and self._wager.status not in TERMINAL_WAGER_STATUSES

    def reset(self) -> bool:
        """Start a new round. A wager still in flight is kept."""
        if self.has_pending_bet():
            return False
        self._wager = None
        self._early_rolls.clear()
        return True

    def abandon(self) -> Optional[Wager]:
        """
        Stop tracking the current wager locally. This does not cancel anything
        on the ledger: a broadcast bet still resolves there.
        """
        wager, self._wager = self._wager, None
        self._early_rolls.clear()
        if wager is not None and wager.status not in TERMINAL_WAGER_STATUSES:
            logger.warning("Abandoned local tracking of in-flight wager bet_id=%s tx=%s", wager.betId, wager.txHash)
        return wager

    # -- placing ---------------------------------------------------------

    def _validate(self, choice: Any, stake: Any) -> int:
        if isinstance(choice, bool) or not isinstance(choice, int) or not MIN_CHOICE <= choice <= MAX_CHOICE:
            raise ValidationError(RejectionReason.INVALID_CHOICE, f"choice must be between {MIN_CHOICE} and {MAX_CHOICE}")
        if self.has_pending_bet():
            raise ValidationError(RejectionReason.PENDING_BET_EXISTS, "a bet is already pending")
        try:
            stake_units = to_base_units(stake, BASE_ASSET.decimals)
        except ValueError as exc:
            raise ValidationError(RejectionReason.STAKE_OUT_OF_RANGE, str(exc)) from exc
        if stake_units <= 0 or not self.min_stake <= stake_units <= self.max_stake:
            raise ValidationError(
                RejectionReason.STAKE_OUT_OF_RANGE,
                f"stake {stake_units} outside [{self.min_stake}, {self.max_stake}]",
            )
        return stake_units

    def _fail(self, wager: Wager, rejection: BetRejection) -> Result[WagerHandle, BetRejection]:
        # Only fail the wager if it is still ours and still unacknowledged.
        if self._wager is wager and wager.status in (WagerStatus.SUBMITTED, WagerStatus.AWAITING_CONFIRMATION):
            wager.status = WagerStatus.FAILED
            wager.failureReason = rejection.reason.value
            wager.updatedAt = utcnow()
        logger.warning("Bet failed player=%s reason=%s detail=%s", self.player, rejection.reason.value, rejection.message)
        return Result.failure(rejection)

    def _handle(self, wager: Wager) -> WagerHandle:
        return WagerHandle(
            player=wager.player,
            choice=wager.choice,
            stakeBaseUnits=wager.stakeBaseUnits,
            status=wager.status,
            txHash=wager.txHash,
            betId=wager.betId,
        )

    async def place_bet(self, choice: int, stake: Union[str, Decimal]) -> Result[WagerHandle, BetRejection]:
        try:
            stake_units = self._validate(choice, stake)
        except ValidationError as exc:
            logger.info("Bet rejected locally player=%s reason=%s", self.player, exc.reason.value)
            return Result.failure(exc)

        # Claim the pending slot before the first await.
        wager = Wager(
            player=self.player,
            choice=choice,
            stake=Decimal(str(stake)),
            stakeBaseUnits=stake_units,
        )
        self._wager = wager
        self._early_rolls.clear()

        try:
            balance = int(await self.gateway.get_balance(self.player))
        except LedgerError as exc:
            return self._fail(wager, _rejection_for(exc))
        except Exception as exc:  # noqa: BLE001
            return self._fail(wager, BetRejection(RejectionReason.LEDGER_UNAVAILABLE, repr(exc)))
        if balance < stake_units:
            return self._fail(
                wager, BetRejection(RejectionReason.INSUFFICIENT_BALANCE, f"balance {balance} below stake {stake_units}")
            )

        try:
            tx_hash = await self.gateway.send("placeBet", [choice], value=stake_units)
        except LedgerError as exc:
            return self._fail(wager, _rejection_for(exc))
        except Exception as exc:  # noqa: BLE001
            return self._fail(wager, BetRejection(RejectionReason.LEDGER_UNAVAILABLE, repr(exc)))

        wager.txHash = tx_hash
        if wager.status == WagerStatus.SUBMITTED:
            wager.status = WagerStatus.AWAITING_CONFIRMATION
            wager.updatedAt = utcnow()
        logger.info("Bet broadcast player=%s choice=%s stake=%s tx=%s", self.player, choice, stake_units, tx_hash)

        return await self._confirm(wager)

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
            await asyncio.sleep(self.receipt_poll_interval_seconds)

    async def _confirm(self, wager: Wager) -> Result[WagerHandle, BetRejection]:
        if wager.status != WagerStatus.AWAITING_CONFIRMATION:
            return Result.success(self._handle(wager))
        try:
            receipt = await asyncio.wait_for(self._wait_for_receipt(wager.txHash), timeout=self.confirmation_timeout_seconds)
        except asyncio.TimeoutError:
            # The transaction may still land; keep tracking it.
            logger.warning("Bet confirmation timed out tx=%s, still tracking", wager.txHash)
            return Result.success(self._handle(wager))
        if receipt_status(receipt) != 1:
            return self._fail(wager, BetRejection(RejectionReason.LEDGER_UNAVAILABLE, f"transaction {wager.txHash} reverted"))
        if wager.status == WagerStatus.AWAITING_CONFIRMATION:
            wager.status = WagerStatus.AWAITING_RESOLUTION
            wager.updatedAt = utcnow()
        logger.info("Bet confirmed tx=%s block=%s", wager.txHash, receipt.get("blockNumber"))
        return Result.success(self._handle(wager))

    # -- reconciliation --------------------------------------------------

    def on_ledger_event(self, event: Union[BetPlaced, DiceRolled, PayoutSent]) -> bool:
        """Apply one ledger event. Returns True if local state changed."""
        if not same_account(event.player, self.player):
            return False
        try:
            if isinstance(event, BetPlaced):
                return self._on_bet_placed(event)
            if isinstance(event, DiceRolled):
                return self._on_dice_rolled(event)
            if isinstance(event, PayoutSent):
                return self._on_payout_sent(event)
            raise ProtocolViolation(f"unknown event {event!r}")
        except ProtocolViolation as exc:
            logger.warning("Dropping ledger event player=%s bet_id=%s reason=%s", self.player, event.betId, exc)
            return False

    def _on_bet_placed(self, event: BetPlaced) -> bool:
        wager = self._wager
        if wager is None or wager.status in TERMINAL_WAGER_STATUSES:
            raise ProtocolViolation("BetPlaced without a tracked wager")
        if wager.betId is not None:
            if wager.betId == event.betId:
                return False
            raise ProtocolViolation(f"BetPlaced for bet {event.betId} while tracking bet {wager.betId}")
        if wager.choice != event.choice or wager.stakeBaseUnits != event.amount:
            raise ProtocolViolation(
                f"BetPlaced choice={event.choice} amount={event.amount} does not match "
                f"choice={wager.choice} amount={wager.stakeBaseUnits}"
            )
        wager.betId = event.betId
        wager.status = WagerStatus.AWAITING_RESOLUTION  # may already be there via the receipt
        wager.updatedAt = utcnow()
        logger.info("Bet acknowledged bet_id=%s player=%s", event.betId, self.player)
        early = self._early_rolls.pop(event.betId, None)
        self._early_rolls.clear()
        if early is not None:
            self._on_dice_rolled(early)
        return True

    def _on_dice_rolled(self, event: DiceRolled) -> bool:
        wager = self._wager
        if wager is not None and wager.betId is None and wager.status not in TERMINAL_WAGER_STATUSES and wager.choice == event.choice:
            self._early_rolls[event.betId] = event
            logger.info("Holding DiceRolled until its BetPlaced arrives bet_id=%s", event.betId)
            return False
        if wager is None or wager.betId != event.betId:
            raise ProtocolViolation(f"DiceRolled for untracked bet {event.betId}")
        if wager.status == WagerStatus.RESOLVED:
            logger.debug("Duplicate DiceRolled ignored bet_id=%s", event.betId)
            return False
        if wager.status != WagerStatus.AWAITING_RESOLUTION:
            raise ProtocolViolation(f"DiceRolled for bet {event.betId} in status {wager.status.value}")
        payout = wager.stakeBaseUnits * settings.win_multiplier if event.isWinner else 0
        wager.outcome = Outcome(rolledValue=event.diceResult, isWinner=event.isWinner, payout=payout)
        wager.status = WagerStatus.RESOLVED
        wager.updatedAt = utcnow()
        logger.info(
            "Bet resolved bet_id=%s player=%s rolled=%s winner=%s payout=%s",
            event.betId,
            self.player,
            event.diceResult,
            event.isWinner,
            payout,
        )
        return True

    def _on_payout_sent(self, event: PayoutSent) -> bool:
        wager = self._wager
        if wager is None or wager.betId != event.betId:
            raise ProtocolViolation(f"PayoutSent for untracked bet {event.betId}")
        notice = PayoutNotice(betId=event.betId, player=event.player, amount=event.amount, isWinner=event.isWinner)
        self.last_payout = notice
        logger.info("Payout sent bet_id=%s amount=%s winner=%s", event.betId, event.amount, event.isWinner)
        if self.on_payout is not None:
            try:
                self.on_payout(notice)
            except Exception:  # noqa: BLE001
                logger.exception("Payout listener failed bet_id=%s", event.betId)
        return False

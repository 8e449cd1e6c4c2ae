"""Off-ramp transaction lifecycle.

    pending -> token_received -> swapping -> usdc_received -> paying -> completed
                                                   \\-> failed (from any non-terminal state)

Each phase checkpoints the row before and after its chain or gateway work,
so a crash or a failure can be resumed with ``advance`` or ``restart``
without repeating completed work. Database sessions are only held while
reading or writing the row, never across a chain confirmation.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import AsyncGenerator, Optional

from eth_utils import is_address, to_checksum_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from offramp.crypto import IdentifierCipher, open_identifier, seal_identifier
from offramp.errors import (
    ActiveTransactionExistsError,
    ChainRPCError,
    GasFundingError,
    InsufficientBalanceError,
    PayoutGatewayError,
    SettlementVerificationError,
    SwapError,
    TransactionStateError,
)
from offramp.hdwallet.base import CustodialWallet
from offramp.hdwallet.provisioner import WalletProvisioner, user_identifier
from offramp.ledger.database import get_db
from offramp.ledger.models import OfframpStatus, OfframpTransaction
from offramp.ledger.repository import OfframpRepository, new_transaction_id, utcnow
from offramp.payout.base import BankAccount
from offramp.payout.dispatcher import PayoutDispatcher
from offramp.scanner.base import Asset, Fungible, Native, TokenBalance
from offramp.scanner.tokens import TokenScanner
from offramp.services.consolidation import ConsolidationTransfer
from offramp.services.gas_funder import GasFunder
from offramp.services.gas_recovery import GasRecovery
from offramp.services.swap_orchestrator import SwapOrchestrator
from offramp.settings_service import OfframpSettingsService
from offramp.signing import erc20
from offramp.signing.evm import NATIVE_TRANSFER_GAS, EVMClient, from_units, hex_to_int
from offramp.utils.locks import WalletBusyError, WalletLock
from offramp.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

NGN_PRECISION = Decimal("0.01")

# Fields cleared when a restart re-enters before the payout
PAYOUT_RESET = {
    "ngn_amount": None,
    "fee_ngn": None,
    "fee_in_token": None,
    "exchange_rate": None,
    "payable_ngn": None,
    "payout_reference": None,
    "transfer_code": None,
    "payout_initiated_at": None,
}

# Fields cleared when a restart re-enters before consolidation
SETTLEMENT_RESET = {
    "consolidation_tx_hash": None,
    "gas_recovery_tx_hash": None,
    "usdc_received_at": None,
}


def _asset_entry(balance: TokenBalance) -> dict:
    """JSON record of one balance to convert."""
    return {
        "symbol": balance.symbol,
        "contract": balance.asset.contract,
        "decimals": balance.asset.decimals,
        "raw": str(balance.raw_amount),
        "amount": str(balance.amount),
        "settled_raw": None,
        "tx_hash": None,
    }


def _entry_asset(entry: dict) -> Asset:
    if entry["contract"] is None:
        return Native(symbol=entry["symbol"], decimals=entry["decimals"])
    return Fungible(symbol=entry["symbol"], contract=entry["contract"], decimals=entry["decimals"])


@dataclass
class AdvanceResult:
    """Outcome of one ``advance`` call."""

    transaction_id: str
    status: OfframpStatus
    success: bool
    error: Optional[str] = None
    busy: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "transaction_id": self.transaction_id,
            "status": self.status.value,
            "error": self.error,
            "busy": self.busy,
        }


class TransactionStateMachine:
    """Runs and checkpoints the off-ramp pipeline for one transaction at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provisioner: WalletProvisioner,
        client: EVMClient,
        scanner: TokenScanner,
        gas_funder: GasFunder,
        swapper: SwapOrchestrator,
        consolidator: ConsolidationTransfer,
        gas_recovery: GasRecovery,
        dispatcher: PayoutDispatcher,
        settings_service: OfframpSettingsService,
        receiver_address: str,
        gas_retry: Optional[RetryPolicy] = None,
        estimated_gas_wei: int = 0,
        dust_threshold: Decimal = Decimal("0"),
        settlement_tolerance_percent: Decimal = Decimal("1"),
        cipher: Optional[IdentifierCipher] = None,
        network: str = "base",
    ):
        self.session_factory = session_factory
        self.provisioner = provisioner
        self.client = client
        self.scanner = scanner
        self.gas_funder = gas_funder
        self.swapper = swapper
        self.consolidator = consolidator
        self.gas_recovery = gas_recovery
        self.dispatcher = dispatcher
        self.settings_service = settings_service
        self.receiver_address = to_checksum_address(receiver_address)
        self.gas_retry = gas_retry or RetryPolicy()
        self.estimated_gas_wei = estimated_gas_wei
        self.dust_threshold = dust_threshold
        self.settlement_tolerance_percent = settlement_tolerance_percent
        self.cipher = cipher
        self.network = network

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _repository(self) -> AsyncGenerator[OfframpRepository, None]:
        async with get_db(self.session_factory) as session:
            yield OfframpRepository(session)

    async def _load(self, transaction_id: str) -> OfframpTransaction:
        async with self._repository() as repo:
            return await repo.require_transaction(transaction_id)

    async def _update(self, transaction_id: str, **fields) -> OfframpTransaction:
        async with self._repository() as repo:
            tx = await repo.require_transaction(transaction_id)
            return await repo.update_transaction(tx, **fields)

    def _wallet(self, tx: OfframpTransaction) -> CustodialWallet:
        """Re-derive the custodial signer from the stored identifier."""
        identifier = open_identifier(tx.derivation_identifier, self.cipher)
        return self.provisioner.derive_for_address(identifier, tx.deposit_address)

    # ------------------------------------------------------------------
    # Address issuance
    # ------------------------------------------------------------------

    async def generate_address(
        self,
        user_id: Optional[str] = None,
        account_number: Optional[str] = None,
        account_name: Optional[str] = None,
        bank_code: Optional[str] = None,
        bank_name: Optional[str] = None,
    ) -> OfframpTransaction:
        """Issue a deposit address.

        Signed-in users always get the same wallet. If that wallet still has
        a pending transaction it is reused with the new bank details.

        Raises:
            OfframpDisabledError: If new transactions are switched off
            ActiveTransactionExistsError: If the wallet is mid-pipeline or still
                holds the deposit of a failed transaction
        """
        bank_details = {
            "account_number": account_number,
            "account_name": account_name,
            "bank_code": bank_code,
            "bank_name": bank_name,
        }
        transaction_id = new_transaction_id()
        identifier = user_identifier(user_id) if user_id else transaction_id
        wallet = self.provisioner.derive(identifier)

        async with self._repository() as repo:
            settings = await self.settings_service.get(repo)
            settings.check_enabled()

            existing = await repo.get_active_by_address(wallet.address)
            if existing is not None:
                if existing.current_status != OfframpStatus.PENDING:
                    raise ActiveTransactionExistsError(
                        f"Transaction {existing.transaction_id} is already "
                        f"{existing.current_status.value} for this wallet"
                    )
                logger.info(f"Reusing pending transaction {existing.transaction_id}")
                return await repo.update_transaction(existing, **bank_details)

            stranded = await repo.get_stranded_by_address(wallet.address)
            if stranded is not None:
                raise ActiveTransactionExistsError(
                    f"Transaction {stranded.transaction_id} failed with its deposit still in "
                    f"this wallet; it must be restarted or refunded first"
                )

            tx = await repo.create_transaction(
                transaction_id=transaction_id,
                deposit_address=wallet.address,
                derivation_identifier=seal_identifier(identifier, self.cipher),
                derivation_path=wallet.derivation_path,
                user_id=user_id,
                network=self.network,
                **bank_details,
            )
            logger.info(f"Created off-ramp transaction {transaction_id} at {wallet.address}")
            return tx

    async def get_transaction(self, transaction_id: str) -> OfframpTransaction:
        return await self._load(transaction_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def advance(self, transaction_id: str) -> AdvanceResult:
        """Run every phase that can run from the current status.

        Only one execution per custodial wallet runs at a time; a concurrent
        call returns a busy result instead of waiting.
        """
        tx = await self._load(transaction_id)

        if tx.current_status == OfframpStatus.COMPLETED:
            return AdvanceResult(transaction_id, OfframpStatus.COMPLETED, success=True)
        if tx.current_status == OfframpStatus.FAILED:
            return AdvanceResult(
                transaction_id,
                OfframpStatus.FAILED,
                success=False,
                error=tx.error_message or "Transaction failed; restart required",
            )

        try:
            async with WalletLock(
                tx.deposit_address, blocking=False, operation=f"advance {transaction_id}"
            ):
                return await self._run(transaction_id)
        except WalletBusyError:
            return AdvanceResult(
                transaction_id,
                tx.current_status,
                success=False,
                error="Transaction is already being processed",
                busy=True,
            )

    async def _run(self, transaction_id: str) -> AdvanceResult:
        # Reload under the lock; another run may have finished meanwhile
        tx = await self._load(transaction_id)
        tx = await self._update(transaction_id, attempt_count=tx.attempt_count + 1)

        while True:
            status = tx.current_status
            if status == OfframpStatus.COMPLETED:
                return AdvanceResult(transaction_id, status, success=True)
            if status == OfframpStatus.FAILED:
                return AdvanceResult(transaction_id, status, success=False, error=tx.error_message)

            try:
                if status == OfframpStatus.PENDING:
                    tx = await self._detect_deposit(tx)
                elif status in (OfframpStatus.TOKEN_RECEIVED, OfframpStatus.SWAPPING):
                    tx = await self._settle(tx)
                else:
                    tx = await self._pay(tx)

            except InsufficientBalanceError as e:
                # The deposit may still be on its way
                logger.info(f"{transaction_id}: {e}")
                tx = await self._update(transaction_id, error_message=str(e))
                return AdvanceResult(transaction_id, tx.current_status, success=False, error=str(e))

            except SettlementVerificationError as e:
                logger.warning(f"{transaction_id}: settlement not verified: {e}")
                tx = await self._update(transaction_id, error_message=str(e))
                return AdvanceResult(transaction_id, tx.current_status, success=False, error=str(e))

            except Exception as e:
                logger.exception(f"{transaction_id} failed in {status.value}: {e}")
                message = f"{type(e).__name__}: {e}"
                async with self._repository() as repo:
                    row = await repo.require_transaction(transaction_id)
                    await repo.mark_failed(row, message)
                return AdvanceResult(
                    transaction_id, OfframpStatus.FAILED, success=False, error=message
                )

    async def _detect_deposit(self, tx: OfframpTransaction) -> OfframpTransaction:
        """pending -> token_received"""
        balances = await self.scanner.scan(tx.deposit_address)
        deposits = self.scanner.pick_deposits(
            balances, self.dust_threshold, native_reserve_wei=self.estimated_gas_wei
        )
        if not deposits:
            raise InsufficientBalanceError(
                f"No deposit above the dust threshold found in {tx.deposit_address}"
            )

        primary = deposits[0]
        logger.info(
            f"{tx.transaction_id}: detected "
            + ", ".join(f"{d.amount} {d.symbol}" for d in deposits)
        )
        return await self._update(
            tx.transaction_id,
            status=OfframpStatus.TOKEN_RECEIVED,
            token_symbol=primary.symbol,
            token_address=primary.asset.contract,
            token_decimals=primary.asset.decimals,
            token_amount_raw=str(primary.raw_amount),
            token_amount=primary.amount,
            detected_assets=[_asset_entry(d) for d in deposits],
            token_received_at=utcnow(),
            error_message=None,
        )

    def _deposit_asset(self, tx: OfframpTransaction) -> Asset:
        if not tx.token_address:
            return Native(symbol=tx.token_symbol or "ETH", decimals=tx.token_decimals or 18)
        return Fungible(
            symbol=tx.token_symbol or "TOKEN",
            contract=tx.token_address,
            decimals=tx.token_decimals,
        )

    def _detected(self, tx: OfframpTransaction) -> list[dict]:
        """Copies of the row's detected balances.

        Rows written before every balance was tracked carry only the primary
        deposit; it is rebuilt from the token columns.
        """
        if tx.detected_assets:
            return [dict(entry) for entry in tx.detected_assets]
        if not tx.has_token:
            return []

        entry = _asset_entry(
            TokenBalance(self._deposit_asset(tx), int(tx.token_amount_raw))
        )
        if tx.swap_tx_hash and tx.usdc_amount_raw:
            entry.update(settled_raw=tx.usdc_amount_raw, tx_hash=tx.swap_tx_hash)
        return [entry]

    def _unsettled_native(self, tx: OfframpTransaction) -> bool:
        return any(
            entry["contract"] is None and entry.get("settled_raw") is None
            for entry in self._detected(tx)
        )

    async def _settle(self, tx: OfframpTransaction) -> OfframpTransaction:
        """token_received -> swapping -> usdc_received"""
        settlement = self.scanner.settlement_asset
        transaction_id = tx.transaction_id

        if not tx.consolidation_tx_hash:
            if tx.current_status == OfframpStatus.TOKEN_RECEIVED:
                tx = await self._update(
                    transaction_id,
                    status=OfframpStatus.SWAPPING,
                    swap_started_at=utcnow(),
                    error_message=None,
                )

            wallet = self._wallet(tx)

            # An ETH deposit keeps back its own gas reserve
            if not tx.is_native_deposit:
                funding_hash = await self.gas_retry.run(
                    lambda: self.gas_funder.ensure_gas(wallet.address, self.estimated_gas_wei),
                    retry_on=(GasFundingError,),
                    description=f"Gas funding for {transaction_id}",
                )
                if funding_hash:
                    tx = await self._update(transaction_id, gas_funding_tx_hash=funding_hash)

            tx = await self._swap_all(tx, wallet, settlement)

            consolidation_hash = await self.consolidator.transfer(
                wallet, settlement, int(tx.usdc_amount_raw), self.receiver_address
            )
            tx = await self._update(
                transaction_id,
                consolidation_tx_hash=consolidation_hash,
                # Settlement-asset deposits need no swap; the transfer is their swap hash
                swap_tx_hash=tx.swap_tx_hash or consolidation_hash,
            )

            try:
                recovery_hash = await self.gas_recovery.recover(wallet)
            except ChainRPCError as e:
                logger.warning(f"{transaction_id}: gas recovery failed: {e}")
                recovery_hash = None
            if recovery_hash:
                tx = await self._update(transaction_id, gas_recovery_tx_hash=recovery_hash)

        received = await self._verify_settlement(tx, settlement)
        return await self._update(
            transaction_id,
            status=OfframpStatus.USDC_RECEIVED,
            usdc_amount_raw=str(received),
            usdc_amount=from_units(received, settlement.decimals),
            usdc_received_at=utcnow(),
            error_message=None,
        )

    async def _swap_all(
        self, tx: OfframpTransaction, wallet: CustodialWallet, settlement: Fungible
    ) -> OfframpTransaction:
        """Convert every detected balance, checkpointing after each swap.

        ``usdc_amount_raw`` is kept equal to the settlement units gained so
        far, so a resumed run only swaps what is left.
        """
        entries = self._detected(tx)

        for entry in entries:
            if entry.get("settled_raw") is not None:
                continue

            asset = _entry_asset(entry)
            raw = int(entry["raw"])
            if isinstance(asset, Native):
                # Gas burnt by earlier swaps comes out of the ETH as well
                balance = await self.client.get_balance(wallet.address)
                raw = min(raw, balance - self.estimated_gas_wei)

            outcome = await self.swapper.swap(wallet, asset, raw)
            entry["settled_raw"] = str(outcome.settlement_amount)
            entry["tx_hash"] = outcome.tx_hash
            if outcome.skipped:
                logger.info(f"{tx.transaction_id}: not swapping {asset.symbol}: {outcome.reason}")

            total = sum(int(e["settled_raw"]) for e in entries if e.get("settled_raw") is not None)
            tx = await self._update(
                tx.transaction_id,
                detected_assets=[dict(e) for e in entries],
                swap_tx_hash=tx.swap_tx_hash or outcome.tx_hash,
                usdc_amount_raw=str(total),
                usdc_amount=from_units(total, settlement.decimals),
            )

        if int(tx.usdc_amount_raw or 0) <= 0:
            raise SwapError(
                f"Nothing to swap: {tx.token_amount} {tx.token_symbol} yielded no "
                f"{settlement.symbol}"
            )
        return tx

    async def _verify_settlement(self, tx: OfframpTransaction, settlement: Fungible) -> int:
        """Check the receiver got the settlement amount, from the transfer's own logs.

        Returns:
            Raw settlement units observed at the receiver
        """
        try:
            receipt = await self.client.get_transaction_receipt(tx.consolidation_tx_hash)
        except ChainRPCError as e:
            raise SettlementVerificationError(
                f"Could not fetch consolidation receipt {tx.consolidation_tx_hash}: {e}"
            ) from e

        if receipt is None:
            raise SettlementVerificationError(
                f"Consolidation {tx.consolidation_tx_hash} has no receipt yet"
            )
        if hex_to_int(receipt.get("status", "0x1")) == 0:
            raise SettlementVerificationError(
                f"Consolidation {tx.consolidation_tx_hash} reverted"
            )

        received = erc20.transfers_in_receipt(receipt, settlement.contract, self.receiver_address)
        expected = int(tx.usdc_amount_raw or 0)
        minimum = Decimal(expected) * (Decimal("100") - self.settlement_tolerance_percent) / 100

        if received <= 0 or Decimal(received) < minimum:
            raise SettlementVerificationError(
                f"Receiver got {from_units(received, settlement.decimals)} {settlement.symbol}, "
                f"expected {from_units(expected, settlement.decimals)}"
            )

        logger.info(
            f"{tx.transaction_id}: verified {from_units(received, settlement.decimals)} "
            f"{settlement.symbol} at {self.receiver_address}"
        )
        return received

    async def _pay(self, tx: OfframpTransaction) -> OfframpTransaction:
        """usdc_received -> paying -> completed"""
        transaction_id = tx.transaction_id

        if tx.current_status == OfframpStatus.USDC_RECEIVED:
            async with self._repository() as repo:
                settings = await self.settings_service.get(repo)
                calculator = await self.settings_service.fee_calculator(repo)

            usdc_amount = Decimal(str(tx.usdc_amount))
            ngn_amount = (usdc_amount * settings.exchange_rate).quantize(
                NGN_PRECISION, rounding=ROUND_HALF_UP
            )
            settings.check_limits(ngn_amount)
            quote = calculator.quote(ngn_amount)

            tx = await self._update(
                transaction_id,
                status=OfframpStatus.PAYING,
                exchange_rate=settings.exchange_rate,
                ngn_amount=quote.ngn_amount,
                fee_ngn=quote.fee,
                fee_in_token=quote.fee_in_settlement(settings.exchange_rate),
                payable_ngn=quote.payable,
                payout_initiated_at=utcnow(),
            )

        account = BankAccount(
            account_number=tx.account_number or "",
            bank_code=tx.bank_code or "",
            account_name=tx.account_name,
            bank_name=tx.bank_name,
        )
        recipient_code = await self.dispatcher.ensure_recipient(account, tx.recipient_code)
        if recipient_code != tx.recipient_code:
            tx = await self._update(transaction_id, recipient_code=recipient_code)

        payable = Decimal(str(tx.payable_ngn))
        if payable <= 0:
            raise PayoutGatewayError(f"Payable amount NGN {payable} is not positive")

        result = await self.dispatcher.payout(
            account, payable, reference=transaction_id, recipient_code=recipient_code
        )

        async with self._repository() as repo:
            row = await repo.require_transaction(transaction_id)
            row = await repo.mark_completed(
                row,
                payout_reference=result.payout_reference,
                transfer_code=result.transfer_code,
                recipient_code=result.recipient_code,
            )
            await repo.record_revenue(transaction_id, row.fee_ngn, row.fee_in_token)

        logger.info(
            f"{transaction_id}: paid NGN {payable} (fee NGN {row.fee_ngn}) "
            f"reference {result.payout_reference}"
        )
        return row

    # ------------------------------------------------------------------
    # Recovery operations
    # ------------------------------------------------------------------

    def _resume_point(self, tx: OfframpTransaction) -> tuple[OfframpStatus, dict]:
        """Earliest incomplete status and the fields to clear for it."""
        if tx.usdc_received_at is not None:
            return OfframpStatus.USDC_RECEIVED, dict(PAYOUT_RESET)

        if tx.consolidation_tx_hash:
            # Funds already moved; only verification is left
            return OfframpStatus.SWAPPING, dict(PAYOUT_RESET)

        if tx.has_token:
            # Swap progress in detected_assets is kept; finished swaps are not repeated
            return OfframpStatus.TOKEN_RECEIVED, {**PAYOUT_RESET, **SETTLEMENT_RESET}

        return OfframpStatus.PENDING, {**PAYOUT_RESET, **SETTLEMENT_RESET}

    async def restart(self, transaction_id: str) -> AdvanceResult:
        """Re-enter the pipeline at the earliest incomplete phase, then advance.

        Raises:
            TransactionStateError: For completed transactions, transactions
                whose payout was accepted, and refunded transactions
            ActiveTransactionExistsError: If another transaction is active on
                the same wallet
        """
        tx = await self._load(transaction_id)

        if tx.current_status == OfframpStatus.COMPLETED:
            raise TransactionStateError("Cannot restart a completed transaction")
        if tx.payout_reference:
            raise TransactionStateError(
                f"Cannot restart {transaction_id}: payout {tx.payout_reference} was already sent"
            )
        if tx.refund_tx_hash:
            raise TransactionStateError(f"Cannot restart {transaction_id}: it was refunded")

        try:
            async with WalletLock(
                tx.deposit_address, blocking=False, operation=f"restart {transaction_id}"
            ):
                async with self._repository() as repo:
                    row = await repo.require_transaction(transaction_id)
                    other = await repo.get_active_by_address(row.deposit_address)
                    if other is not None and other.transaction_id != transaction_id:
                        raise ActiveTransactionExistsError(
                            f"Cannot restart {transaction_id}: transaction {other.transaction_id} "
                            f"is already {other.current_status.value} for this wallet"
                        )
                    status, fields = self._resume_point(row)
                    await repo.update_transaction(
                        row,
                        status=status,
                        error_message=None,
                        restart_count=row.restart_count + 1,
                        **fields,
                    )
        except WalletBusyError as e:
            raise TransactionStateError(f"Cannot restart {transaction_id}: {e}") from e

        logger.info(f"{transaction_id}: restarting at {status.value}")
        return await self.advance(transaction_id)

    def _refund_assets(self, entries: list[dict]) -> list[Asset]:
        """Assets still sitting in the wallet for this transaction, ETH last."""
        settlement = self.scanner.settlement_asset
        assets: list[Asset] = []
        native: Optional[Asset] = None

        for entry in entries:
            settled = entry.get("settled_raw") is not None
            if settled and int(entry["settled_raw"]) <= 0:
                # Skipped as dust; whatever is left is still the original asset
                settled = False
            asset = settlement if settled else _entry_asset(entry)
            if isinstance(asset, Native):
                native = asset
            elif not any(a.contract.lower() == asset.contract.lower() for a in assets):
                assets.append(asset)

        return assets + ([native] if native else [])

    async def refund(self, transaction_id: str, to_address: str) -> OfframpTransaction:
        """Send the deposit back out of the custodial wallet.

        Every detected balance is returned as it currently sits in the
        wallet: untouched tokens as themselves, swapped ones as the
        settlement asset. ETH deposits pay their own gas; otherwise gas
        comes from the treasury.

        Raises:
            TransactionStateError: If the funds already left the custodial wallet
        """
        if not is_address(to_address):
            raise ValueError(f"Invalid refund address: {to_address}")
        to_address = to_checksum_address(to_address)

        tx = await self._load(transaction_id)
        if tx.current_status == OfframpStatus.COMPLETED:
            raise TransactionStateError("Cannot refund a completed transaction")
        if tx.consolidation_tx_hash or tx.payout_reference:
            raise TransactionStateError(
                f"Cannot refund {transaction_id}: funds already left the deposit wallet"
            )
        if tx.refund_tx_hash:
            raise TransactionStateError(
                f"Transaction {transaction_id} was already refunded: {tx.refund_tx_hash}"
            )

        sent: list[tuple[str, str]] = []
        recovery_hash = None
        try:
            async with WalletLock(
                tx.deposit_address, blocking=False, operation=f"refund {transaction_id}"
            ):
                wallet = self._wallet(tx)
                entries = self._detected(tx)
                if not entries:
                    balances = await self.scanner.scan(wallet.address)
                    entries = [
                        _asset_entry(b)
                        for b in self.scanner.pick_deposits(balances, self.dust_threshold)
                    ]
                if not entries:
                    raise InsufficientBalanceError(f"Nothing to refund in {wallet.address}")

                assets = self._refund_assets(entries)
                native = next((a for a in assets if isinstance(a, Native)), None)

                tokens: list[tuple[Fungible, int]] = []
                for asset in assets:
                    if isinstance(asset, Fungible):
                        raw = await self.client.erc20_balance(asset.contract, wallet.address)
                        if raw > 0:
                            tokens.append((asset, raw))

                if tokens and native is None:
                    await self.gas_funder.ensure_gas(wallet.address, self.estimated_gas_wei)
                for asset, raw in tokens:
                    tx_hash = await self.client.send_erc20(
                        wallet.account, asset.contract, to_address, raw
                    )
                    sent.append((f"{from_units(raw, asset.decimals)} {asset.symbol}", tx_hash))

                if native is not None:
                    balance = await self.client.get_balance(wallet.address)
                    gas_price = await self.client.get_gas_price()
                    value = balance - NATIVE_TRANSFER_GAS * gas_price
                    if value > 0:
                        tx_hash = await self.client.send_native(
                            wallet.account, to_address, value, gas_price=gas_price
                        )
                        amount = from_units(value, native.decimals)
                        sent.append((f"{amount} {native.symbol}", tx_hash))
                else:
                    try:
                        recovery_hash = await self.gas_recovery.recover(wallet)
                    except ChainRPCError as e:
                        logger.warning(f"{transaction_id}: gas recovery after refund failed: {e}")

                if not sent:
                    raise InsufficientBalanceError(
                        f"No deposit left in {wallet.address} to refund"
                    )
        except WalletBusyError as e:
            raise TransactionStateError(f"Cannot refund {transaction_id}: {e}") from e

        summary = ", ".join(f"{amount}: {tx_hash}" for amount, tx_hash in sent)
        logger.info(f"{transaction_id}: refunded to {to_address}: {summary}")

        async with self._repository() as repo:
            row = await repo.require_transaction(transaction_id)
            await repo.update_transaction(
                row,
                refund_tx_hash=sent[0][1],
                gas_recovery_tx_hash=recovery_hash or row.gas_recovery_tx_hash,
            )
            return await repo.mark_failed(row, f"Refunded to {to_address}: {summary}")

    async def return_gas(self, transaction_id: str) -> Optional[str]:
        """Sweep leftover ETH from the transaction's wallet to the treasury.

        Raises:
            TransactionStateError: While the wallet may hold a user's ETH,
                either undetected (pending) or detected but not yet swapped
        """
        tx = await self._load(transaction_id)
        if tx.current_status == OfframpStatus.PENDING:
            raise TransactionStateError(
                f"Cannot return gas for {transaction_id}: its deposit has not been scanned"
            )
        if self._unsettled_native(tx) and not tx.refund_tx_hash:
            raise TransactionStateError(
                f"Cannot return gas for {transaction_id}: the wallet holds an unconverted "
                f"ETH deposit"
            )

        try:
            async with WalletLock(
                tx.deposit_address, blocking=False, operation=f"return gas {transaction_id}"
            ):
                recovery_hash = await self.gas_recovery.recover(self._wallet(tx))
        except WalletBusyError as e:
            raise TransactionStateError(f"Cannot return gas for {transaction_id}: {e}") from e

        if recovery_hash:
            await self._update(transaction_id, gas_recovery_tx_hash=recovery_hash)
        return recovery_hash

    async def cancel(self, transaction_id: str) -> OfframpTransaction:
        """Abandon a pending transaction before anything happens on-chain.

        Raises:
            TransactionStateError: If the transaction is past pending, or a
                deposit has already arrived in its wallet
        """
        tx = await self._load(transaction_id)
        if tx.current_status != OfframpStatus.PENDING:
            raise TransactionStateError(
                f"Cannot cancel {transaction_id}: it is already {tx.current_status.value}"
            )

        try:
            async with WalletLock(
                tx.deposit_address, blocking=False, operation=f"cancel {transaction_id}"
            ):
                async with self._repository() as repo:
                    stranded = await repo.get_stranded_by_address(tx.deposit_address)

                # A deposit in the wallet belongs to this row unless a failed one owns it
                if stranded is None:
                    balances = await self.scanner.scan(tx.deposit_address)
                    deposit = self.scanner.pick_deposit(
                        balances, self.dust_threshold, native_reserve_wei=self.estimated_gas_wei
                    )
                    if deposit is not None:
                        raise TransactionStateError(
                            f"Cannot cancel {transaction_id}: {deposit.amount} {deposit.symbol} "
                            f"already arrived; process it instead"
                        )

                async with self._repository() as repo:
                    row = await repo.require_transaction(transaction_id)
                    if row.current_status != OfframpStatus.PENDING:
                        raise TransactionStateError(
                            f"Cannot cancel {transaction_id}: it is already "
                            f"{row.current_status.value}"
                        )
                    row = await repo.mark_failed(row, "Cancelled before any deposit arrived")
        except WalletBusyError as e:
            raise TransactionStateError(f"Cannot cancel {transaction_id}: {e}") from e

        logger.info(f"{transaction_id}: cancelled")
        return row

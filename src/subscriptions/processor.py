"""Crypto subscription payment processing.

Turns a PaymentRequest into a PaymentResult: validate the request, check the
payer's balances, verify the optional signature, move the ADAO tokens (or
simulate the move) and create the subscription. Every failure comes back as a
PaymentResult with a classified error; nothing is raised to the caller.
"""

import secrets
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from eth_account.signers.local import LocalAccount
from pydantic import BaseModel

from src.config import PaymentSettings
from src.database import Database
from src.logging_utils import get_logger, get_request_id
from src.models import (
    BillingCycle,
    ErrorKind,
    PaymentDetails,
    PaymentMode,
    PaymentRequest,
    PaymentResult,
    TransferReceipt,
    isoformat_z,
    utc_now,
)
from src.subscriptions.chain import (
    ChainClient,
    ChainError,
    TransactionRevertedError,
    TransactionUnconfirmedError,
    format_amount,
    format_units,
    to_smallest_unit,
)
from src.subscriptions.gateway import SubscriptionGateway
from src.subscriptions.notifier import WebhookNotifier
from src.subscriptions.plans import plan_price
from src.subscriptions.signatures import is_valid_address, verify_message_signature

logger = get_logger(__name__)

NATIVE_DECIMALS = 18
BILLING_CYCLES = frozenset(cycle.value for cycle in BillingCycle)


class ValidatedPayment(BaseModel):
    """Request fields after validation, ready for the chain steps."""

    user_address: str
    plan_id: str
    billing_cycle: str
    amount: Decimal
    amount_units: int
    receiver_address: str


def _parse_amount(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def simulated_transaction_hash() -> str:
    """A random 32-byte hash in the same shape as a real transaction hash."""
    return "0x" + secrets.token_hex(32)


class PaymentProcessor:
    """Orchestrates validation, balance checks, transfer and subscription creation."""

    def __init__(
        self,
        settings: PaymentSettings,
        chain: ChainClient,
        gateway: SubscriptionGateway,
        ledger: Database,
        notifier: Optional[WebhookNotifier] = None,
    ):
        """Initialize the payment processor.

        Args:
            settings: Immutable token, chain and plan settings.
            chain: Client for balance reads and token transfers.
            gateway: Service of record for subscriptions.
            ledger: Ledger holding the reconciliation outbox.
            notifier: Optional outbound webhook notifier.
        """
        self.settings = settings
        self.chain = chain
        self.gateway = gateway
        self.ledger = ledger
        self.notifier = notifier

    async def process_payment(
        self,
        request: PaymentRequest,
        mode: PaymentMode = PaymentMode.SIMULATED,
        signer: Optional[LocalAccount] = None,
    ) -> PaymentResult:
        """Process one subscription payment.

        Args:
            request: The payment request.
            mode: SIMULATED skips the chain transfer, ONCHAIN submits it.
            signer: Account paying the transfer; required in ONCHAIN mode.

        Returns:
            PaymentResult describing the outcome.
        """
        logger.info(f"Starting payment processing ({mode.value}): {request.model_dump()}")
        try:
            result = await self._process(request, mode, signer)
        except Exception as e:
            logger.error(f"Payment processing error: {e}", exc_info=True)
            result = PaymentResult.fail(ErrorKind.UNEXPECTED, str(e) or "Payment processing failed")

        if not result.success:
            logger.warning(f"Payment failed [{result.failure.kind.value}]: {result.error}")
            if result.failure.kind in (ErrorKind.TRANSACTION, ErrorKind.DOWNSTREAM):
                await self._notify(
                    "payment.failed",
                    user_address=request.user_address,
                    plan_id=request.plan_id,
                    billing_cycle=request.billing_cycle,
                )
        return result

    def validate(self, request: PaymentRequest) -> Union[ValidatedPayment, PaymentResult]:
        """Check request fields in a fixed order; the first failure wins.

        Returns:
            ValidatedPayment on success, otherwise a failed PaymentResult.
        """
        if _is_missing(request.user_address):
            return PaymentResult.fail(ErrorKind.INVALID_INPUT, "Missing user address", field="user_address")
        if not is_valid_address(request.user_address):
            return PaymentResult.fail(
                ErrorKind.INVALID_INPUT, "Invalid user address format", field="user_address"
            )

        if _is_missing(request.plan_id):
            return PaymentResult.fail(ErrorKind.INVALID_INPUT, "Missing plan ID", field="plan_id")
        if not isinstance(request.plan_id, str) or request.plan_id not in self.settings.plans:
            return PaymentResult.fail(ErrorKind.INVALID_INPUT, "Invalid plan ID", field="plan_id")

        if _is_missing(request.billing_cycle):
            return PaymentResult.fail(
                ErrorKind.INVALID_INPUT, "Missing billing cycle", field="billing_cycle"
            )
        if not isinstance(request.billing_cycle, str) or request.billing_cycle not in BILLING_CYCLES:
            return PaymentResult.fail(
                ErrorKind.INVALID_INPUT, "Invalid billing cycle", field="billing_cycle"
            )

        if _is_missing(request.amount):
            return PaymentResult.fail(ErrorKind.INVALID_INPUT, "Missing amount", field="amount")
        amount = _parse_amount(request.amount)
        if amount is None:
            return PaymentResult.fail(ErrorKind.INVALID_INPUT, "Invalid amount format", field="amount")
        if amount <= 0:
            return PaymentResult.fail(
                ErrorKind.INVALID_INPUT, "Invalid amount: must be positive", field="amount"
            )
        try:
            amount_units = to_smallest_unit(amount, self.settings.token_decimals)
        except ValueError as e:
            return PaymentResult.fail(ErrorKind.INVALID_INPUT, f"Invalid amount: {e}", field="amount")

        receiver_address = request.receiver_address or self.settings.default_receiver
        if not is_valid_address(receiver_address):
            return PaymentResult.fail(
                ErrorKind.INVALID_INPUT, "Invalid receiver address", field="receiver_address"
            )

        if request.signature and request.message:
            if not verify_message_signature(request.message, request.signature, request.user_address):
                return PaymentResult.fail(ErrorKind.AUTHENTICATION, "Invalid signature")

        return ValidatedPayment(
            user_address=request.user_address,
            plan_id=request.plan_id,
            billing_cycle=request.billing_cycle,
            amount=amount,
            amount_units=amount_units,
            receiver_address=receiver_address,
        )

    async def _process(
        self,
        request: PaymentRequest,
        mode: PaymentMode,
        signer: Optional[LocalAccount],
    ) -> PaymentResult:
        validated = self.validate(request)
        if isinstance(validated, PaymentResult):
            return validated
        payment = validated
        symbol = self.settings.token_symbol
        native = self.settings.native_symbol

        if mode is PaymentMode.ONCHAIN:
            if signer is None:
                return PaymentResult.fail(
                    ErrorKind.INVALID_INPUT, "A signer is required for on-chain payments"
                )
            if signer.address.lower() != payment.user_address.lower():
                return PaymentResult.fail(
                    ErrorKind.AUTHENTICATION,
                    "Signer does not match user address",
                    signer=signer.address,
                )

        logger.info("All validations passed")

        expected_price = plan_price(payment.plan_id, payment.billing_cycle, self.settings.plans)
        if expected_price is not None and Decimal(str(expected_price)) != payment.amount:
            logger.warning(
                f"Amount {format_amount(payment.amount)} {symbol} differs from the "
                f"{payment.plan_id}/{payment.billing_cycle} price of {expected_price:g} {symbol}"
            )

        # Gas balance
        try:
            native_balance = await self.chain.get_native_balance(payment.user_address)
        except Exception as e:
            logger.error(f"Failed to read {native} balance: {e}", exc_info=True)
            return PaymentResult.fail(ErrorKind.TRANSACTION, f"Failed to read {native} balance: {e}")

        min_gas = to_smallest_unit(self.settings.min_gas_balance, NATIVE_DECIMALS)
        logger.info(
            f"{native} balance check for {payment.user_address}: "
            f"balance={format_units(native_balance, NATIVE_DECIMALS)}, "
            f"required={format_amount(self.settings.min_gas_balance)}"
        )
        if native_balance < min_gas:
            required_str = format_amount(self.settings.min_gas_balance)
            current_str = format_units(native_balance, NATIVE_DECIMALS)
            return PaymentResult.fail(
                ErrorKind.INSUFFICIENT_FUNDS,
                f"Insufficient {native} for gas fees. You need at least {required_str} {native}. "
                f"Current balance: {current_str} {native}.",
                required=required_str,
                available=current_str,
                asset=native,
            )

        # Token balance
        try:
            token_balance = await self.chain.get_token_balance(payment.user_address)
        except Exception as e:
            logger.error(f"Failed to read {symbol} balance: {e}", exc_info=True)
            return PaymentResult.fail(ErrorKind.TRANSACTION, f"Failed to read {symbol} balance: {e}")

        if token_balance < payment.amount_units:
            required_str = format_amount(payment.amount)
            available_str = format_units(token_balance, self.settings.token_decimals)
            return PaymentResult.fail(
                ErrorKind.INSUFFICIENT_FUNDS,
                f"Insufficient {symbol} balance. Required: {required_str} {symbol}, "
                f"Available: {available_str} {symbol}",
                required=required_str,
                available=available_str,
                asset=symbol,
            )

        # Transfer
        logger.info(
            f"Processing {symbol} transfer: from={payment.user_address}, to={payment.receiver_address}, "
            f"amount={format_amount(payment.amount)}, units={payment.amount_units}"
        )
        receipt: Optional[TransferReceipt] = None
        if mode is PaymentMode.ONCHAIN:
            try:
                receipt = await self.chain.transfer_token(
                    signer, payment.receiver_address, payment.amount_units
                )
            except ChainError as e:
                logger.error(f"Token transfer failed: {e}", exc_info=True)
                context = {}
                if isinstance(e, TransactionUnconfirmedError):
                    # Submitted but unconfirmed; the transfer may still be mined
                    context["reconciliation_id"] = await self._record_reconciliation(
                        payment, e.transaction_hash, str(e)
                    )
                return PaymentResult.fail(
                    ErrorKind.TRANSACTION,
                    f"Token transfer failed: {e}",
                    transaction_hash=e.transaction_hash,
                    **context,
                )
            except Exception as e:
                logger.error(f"Token transfer failed: {e}", exc_info=True)
                return PaymentResult.fail(ErrorKind.TRANSACTION, f"Token transfer failed: {e}")
            transaction_hash = receipt.transaction_hash
        else:
            transaction_hash = simulated_transaction_hash()
            logger.info(f"Simulated {symbol} transfer completed: {transaction_hash}")

        # Subscription
        try:
            subscription = await self.gateway.create_subscription(
                payment.user_address, payment.plan_id, payment.billing_cycle
            )
        except Exception as e:
            error_msg = f"Subscription creation failed after payment: {e}"
            logger.error(error_msg, exc_info=True)
            context = {}
            if mode is PaymentMode.ONCHAIN:
                context["reconciliation_id"] = await self._record_reconciliation(
                    payment, transaction_hash, error_msg, receipt
                )
            return PaymentResult.fail(
                ErrorKind.DOWNSTREAM,
                error_msg,
                transaction_hash=transaction_hash,
                **context,
            )

        logger.info(
            f"Payment processed successfully: subscription={subscription.id}, "
            f"tx={transaction_hash}, user={payment.user_address}, plan={payment.plan_id}, "
            f"cycle={payment.billing_cycle}, amount={format_amount(payment.amount)} {symbol}"
        )
        await self._notify(
            "payment.succeeded",
            subscription_id=subscription.id,
            user_address=payment.user_address,
            plan_id=payment.plan_id,
            billing_cycle=payment.billing_cycle,
            amount=float(payment.amount),
        )

        return PaymentResult(
            success=True,
            subscription_id=subscription.id,
            transaction_hash=transaction_hash,
            gas_used=str(receipt.gas_used) if receipt else None,
            block_number=receipt.block_number if receipt else None,
            simulated=mode is PaymentMode.SIMULATED,
            payment_details=PaymentDetails(
                from_address=payment.user_address,
                to_address=payment.receiver_address,
                amount=float(payment.amount),
                token=symbol,
                token_address=self.settings.token_address,
            ),
        )

    async def _record_reconciliation(
        self,
        payment: ValidatedPayment,
        transaction_hash: str,
        error_message: str,
        receipt: Optional[TransferReceipt] = None,
    ) -> Optional[str]:
        """Write the transfer to the reconciliation outbox.

        Returns:
            The reconciliation ID, or None if the ledger write failed.
        """
        logger.error(
            f"RECONCILIATION REQUIRED: tx {transaction_hash} from {payment.user_address} "
            f"({format_amount(payment.amount)} {self.settings.token_symbol}, "
            f"{payment.plan_id}/{payment.billing_cycle}) has no subscription: {error_message}"
        )
        try:
            record = await self.ledger.record_reconciliation(
                transaction_hash=transaction_hash,
                user_address=payment.user_address,
                receiver_address=payment.receiver_address,
                plan_id=payment.plan_id,
                billing_cycle=payment.billing_cycle,
                amount=float(payment.amount),
                token_address=self.settings.token_address,
                error_message=error_message,
                block_number=receipt.block_number if receipt else None,
                request_id=get_request_id(),
            )
        except Exception as e:
            logger.error(
                f"Could not record reconciliation for tx {transaction_hash}: {e}", exc_info=True
            )
            return None
        return record.reconciliation_id

    async def retry_reconciliation(self, reconciliation_id: str) -> PaymentResult:
        """Retry subscription creation for a transfer in the outbox.

        The transfer must be mined successfully before a subscription is
        created. A reverted transfer closes the entry as failed; an unmined or
        unreadable one leaves it pending for a later retry.

        Args:
            reconciliation_id: Outbox entry to replay.

        Returns:
            PaymentResult; succeeds immediately if the entry was already resolved.
        """
        record = await self.ledger.get_reconciliation(reconciliation_id)
        if record is None:
            return PaymentResult.fail(
                ErrorKind.INVALID_INPUT,
                f"Reconciliation not found: {reconciliation_id}",
                field="reconciliation_id",
            )

        if record.status == "resolved":
            logger.info(f"Reconciliation {reconciliation_id} already resolved (idempotent)")
            return PaymentResult(
                success=True,
                subscription_id=record.subscription_id,
                transaction_hash=record.transaction_hash,
            )

        tx_hash = record.transaction_hash
        if record.status == "failed":
            return PaymentResult.fail(
                ErrorKind.TRANSACTION,
                f"Reconciliation {reconciliation_id} is closed: {record.error_message}",
                transaction_hash=tx_hash,
                reconciliation_id=reconciliation_id,
            )

        if not await self.ledger.claim_reconciliation(reconciliation_id):
            return PaymentResult.fail(
                ErrorKind.DOWNSTREAM,
                f"Reconciliation {reconciliation_id} is already being retried",
                transaction_hash=tx_hash,
                reconciliation_id=reconciliation_id,
                in_progress=True,
            )

        try:
            receipt = await self.chain.get_transfer_receipt(tx_hash)
        except TransactionRevertedError as e:
            await self.ledger.mark_reconciliation_failed(reconciliation_id, str(e))
            return PaymentResult.fail(
                ErrorKind.TRANSACTION,
                f"Transfer failed on chain: {e}",
                transaction_hash=tx_hash,
                reconciliation_id=reconciliation_id,
            )
        except Exception as e:
            logger.error(f"Receipt lookup failed for {tx_hash}: {e}", exc_info=True)
            await self.ledger.release_reconciliation(reconciliation_id, f"Receipt lookup failed: {e}")
            return PaymentResult.fail(
                ErrorKind.TRANSACTION,
                f"Could not confirm transfer: {e}",
                transaction_hash=tx_hash,
                reconciliation_id=reconciliation_id,
            )

        if receipt is None:
            message = f"Transfer {tx_hash} is not mined yet"
            await self.ledger.release_reconciliation(reconciliation_id, message)
            return PaymentResult.fail(
                ErrorKind.TRANSACTION,
                message,
                transaction_hash=tx_hash,
                reconciliation_id=reconciliation_id,
            )

        try:
            subscription = await self.gateway.create_subscription(
                record.user_address, record.plan_id, record.billing_cycle
            )
        except Exception as e:
            logger.error(f"Reconciliation retry failed for {reconciliation_id}: {e}", exc_info=True)
            await self.ledger.release_reconciliation(
                reconciliation_id, f"Subscription creation failed: {e}"
            )
            return PaymentResult.fail(
                ErrorKind.DOWNSTREAM,
                f"Subscription creation failed: {e}",
                transaction_hash=tx_hash,
                reconciliation_id=reconciliation_id,
            )

        await self.ledger.mark_reconciliation_resolved(reconciliation_id, subscription.id)
        return PaymentResult(
            success=True,
            subscription_id=subscription.id,
            transaction_hash=tx_hash,
            gas_used=str(receipt.gas_used),
            block_number=receipt.block_number,
            payment_details=PaymentDetails(
                from_address=record.user_address,
                to_address=record.receiver_address,
                amount=record.amount,
                token=self.settings.token_symbol,
                token_address=record.token_address,
            ),
        )

    async def check_subscription_status(self, user_address: str) -> Dict[str, Any]:
        """Look up a user's subscription through the gateway."""
        try:
            if not user_address or not is_valid_address(user_address):
                raise ValueError("Invalid user address")

            status = await self.gateway.check_subscription(user_address)

            return {
                "success": True,
                "status": status.model_dump(mode="json"),
                "userAddress": user_address,
                "timestamp": isoformat_z(utc_now()),
            }
        except Exception as e:
            logger.error(f"Status check error: {e}")
            return {
                "success": False,
                "error": str(e) or "Failed to check status",
                "userAddress": user_address,
            }

    async def cancel_subscription(self, user_address: str) -> Dict[str, Any]:
        """Cancel a user's subscription through the gateway."""
        try:
            if not user_address or not is_valid_address(user_address):
                raise ValueError("Invalid user address")

            cancelled = await self.gateway.cancel_subscription(user_address)

            return {
                "success": cancelled,
                "userAddress": user_address,
                "cancelledAt": isoformat_z(utc_now()),
                "message": (
                    "Subscription cancelled successfully"
                    if cancelled
                    else "Failed to cancel subscription"
                ),
            }
        except Exception as e:
            logger.error(f"Cancellation error: {e}")
            return {
                "success": False,
                "error": str(e) or "Failed to cancel subscription",
                "userAddress": user_address,
            }

    async def estimate_gas_cost(
        self,
        user_address: str,
        plan_id: str,
        billing_cycle: str,
        receiver_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Estimate the native-currency cost of paying for a plan."""
        try:
            if not user_address or not is_valid_address(user_address):
                raise ValueError("Invalid user address")
            price = plan_price(plan_id, billing_cycle, self.settings.plans)
            if price is None:
                raise ValueError("Invalid plan ID or billing cycle")
            receiver = receiver_address or self.settings.default_receiver
            if not is_valid_address(receiver):
                raise ValueError("Invalid receiver address")

            units = to_smallest_unit(price, self.settings.token_decimals)
            gas, gas_price = await self.chain.estimate_transfer_gas(user_address, receiver, units)
            cost = gas * gas_price

            return {
                "success": True,
                "estimatedGas": str(gas),
                "gasPrice": str(gas_price),
                "estimatedCost": format_units(cost, NATIVE_DECIMALS),
                "nativeSymbol": self.settings.native_symbol,
                "amount": price,
                "token": self.settings.token_symbol,
            }
        except Exception as e:
            logger.error(f"Gas estimation error: {e}")
            return {
                "success": False,
                "error": str(e) or "Failed to estimate gas cost",
            }

    async def _notify(self, event: str, **fields: Any) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event, **fields)
        except Exception as e:
            logger.error(f"Failed to send {event} notification: {e}")

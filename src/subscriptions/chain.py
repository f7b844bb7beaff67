"""Chain client for the ADAO payment token.

Reads native and token balances and submits token transfers against a single
RPC endpoint and a single ERC-20 contract. One request per need; no retries.
"""

from decimal import Decimal
from typing import Optional, Tuple, Union

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from src.logging_utils import get_logger
from src.models import TransferReceipt

logger = get_logger(__name__)

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


MAX_UINT256 = 2**256 - 1


class ChainError(Exception):
    """A chain interaction failed."""

    def __init__(self, message: str, transaction_hash: str = None):
        super().__init__(message)
        self.transaction_hash = transaction_hash


class TransactionUnconfirmedError(ChainError):
    """Transfer was submitted but its outcome could not be confirmed."""


class TransactionTimeoutError(TransactionUnconfirmedError):
    """Transfer was submitted but no receipt arrived in time."""


class TransactionRevertedError(ChainError):
    """Transfer was mined with a failed status."""


def to_smallest_unit(amount: Union[Decimal, float, int, str], decimals: int) -> int:
    """Convert a human token amount to integer base units.

    Raises:
        ValueError: If the amount has more fractional digits than decimals allows
            or is too large to represent.
    """
    try:
        scaled = Decimal(str(amount)).scaleb(decimals)
    except ArithmeticError as e:
        raise ValueError(f"{amount} is out of range") from e
    if scaled > MAX_UINT256:
        raise ValueError(f"{amount} is out of range")
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    return int(scaled)


def format_units(value: int, decimals: int) -> str:
    """Render integer base units as a plain decimal string without trailing zeros."""
    return format(Decimal(value).scaleb(-decimals).normalize(), "f")


def format_amount(amount: Union[Decimal, float, int, str]) -> str:
    return format(Decimal(str(amount)).normalize(), "f")


class ChainClient:
    """Async access to the configured chain and payment token."""

    def __init__(
        self,
        rpc_url: str,
        token_address: str,
        chain_id: int,
        confirmation_timeout: float = 120.0,
    ):
        """Initialize the chain client.

        Args:
            rpc_url: JSON-RPC endpoint.
            token_address: ERC-20 payment token contract.
            chain_id: Chain ID used when signing transfers.
            confirmation_timeout: Seconds to wait for a transfer receipt.
        """
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.confirmation_timeout = confirmation_timeout
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.token = self.w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=ERC20_ABI,
        )

    async def get_native_balance(self, address: str) -> int:
        """Native currency balance in wei."""
        return await self.w3.eth.get_balance(Web3.to_checksum_address(address))

    async def get_token_balance(self, address: str) -> int:
        """Payment token balance in base units."""
        return await self.token.functions.balanceOf(Web3.to_checksum_address(address)).call()

    async def get_token_decimals(self) -> int:
        return await self.token.functions.decimals().call()

    async def estimate_transfer_gas(
        self, from_address: str, to_address: str, amount: int
    ) -> Tuple[int, int]:
        """Estimate gas units and current gas price for a token transfer.

        Returns:
            (gas units, gas price in wei)
        """
        gas = await self.token.functions.transfer(
            Web3.to_checksum_address(to_address), amount
        ).estimate_gas({"from": Web3.to_checksum_address(from_address)})
        gas_price = await self.w3.eth.gas_price
        return gas, gas_price

    async def transfer_token(
        self, signer: LocalAccount, to_address: str, amount: int
    ) -> TransferReceipt:
        """Transfer tokens from the signer's account and wait until mined.

        Args:
            signer: Account holding the key of the paying address.
            to_address: Receiver of the tokens.
            amount: Amount in base units.

        Returns:
            Receipt of the mined transfer.

        Raises:
            TransactionTimeoutError: No receipt within the confirmation timeout.
            TransactionUnconfirmedError: The receipt could not be read after submission.
            TransactionRevertedError: The transfer was mined but failed.
        """
        sender = Web3.to_checksum_address(signer.address)
        nonce = await self.w3.eth.get_transaction_count(sender)
        tx = await self.token.functions.transfer(
            Web3.to_checksum_address(to_address), amount
        ).build_transaction({"from": sender, "nonce": nonce, "chainId": self.chain_id})

        signed = signer.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"Submitted token transfer {tx_hash_hex} from {sender} to {to_address}")

        # From here on the transfer may be mined; every failure keeps the hash
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.confirmation_timeout
            )
            transfer = self._to_transfer_receipt(tx_hash_hex, receipt)
        except TransactionRevertedError:
            raise
        except TimeExhausted as e:
            raise TransactionTimeoutError(
                f"Transaction {tx_hash_hex} not mined within {self.confirmation_timeout:g}s",
                transaction_hash=tx_hash_hex,
            ) from e
        except Exception as e:
            raise TransactionUnconfirmedError(
                f"Could not confirm transaction {tx_hash_hex}: {e}",
                transaction_hash=tx_hash_hex,
            ) from e

        logger.info(
            f"Token transfer {tx_hash_hex} mined in block {transfer.block_number}, "
            f"gas used {transfer.gas_used}"
        )
        return transfer

    async def get_transfer_receipt(self, transaction_hash: str) -> Optional[TransferReceipt]:
        """Look up the receipt of a previously submitted transfer.

        Args:
            transaction_hash: Hex transaction hash.

        Returns:
            Receipt of the successfully mined transfer, or None if it is not mined.

        Raises:
            TransactionRevertedError: The transfer was mined but failed.
        """
        try:
            receipt = await self.w3.eth.get_transaction_receipt(transaction_hash)
        except TransactionNotFound:
            return None
        return self._to_transfer_receipt(transaction_hash, receipt)

    @staticmethod
    def _to_transfer_receipt(transaction_hash: str, receipt) -> TransferReceipt:
        if receipt["status"] != 1:
            raise TransactionRevertedError(
                f"Transaction {transaction_hash} reverted", transaction_hash=transaction_hash
            )
        return TransferReceipt(
            transaction_hash=transaction_hash,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )

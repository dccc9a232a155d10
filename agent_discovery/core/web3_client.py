"""
Async wrapper around web3.py for the identity and reputation registries.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_utils import keccak, to_checksum_address
from web3 import AsyncWeb3

from .config import TIMEOUTS
from .exceptions import AuthoritativeOperationError, PreconditionError
from .identifiers import normalize_address

logger = logging.getLogger(__name__)


class TransactionHandle:
    """A submitted transaction. Not durable until wait() returns."""

    def __init__(self, web3_client: "Web3Client", tx_hash: str):
        self.web3_client = web3_client
        self.tx_hash = tx_hash

    def __repr__(self) -> str:
        return f"TransactionHandle(tx_hash={self.tx_hash})"

    async def wait(self, timeout: float = TIMEOUTS["transactionWait"]) -> Dict[str, Any]:
        """Wait for the receipt; a reverted transaction raises."""
        receipt = await self.web3_client.wait_for_transaction(self.tx_hash, timeout=timeout)
        if receipt.get("status") == 0:
            raise AuthoritativeOperationError(f"Transaction {self.tx_hash} reverted")
        return receipt


class Web3Client:
    """Contract reads, writes and event queries against one chain."""

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        private_key: Optional[str] = None,
        account: Optional[Any] = None,
        request_timeout: float = 30.0,
    ):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        if private_key:
            self.account = Account.from_key(private_key)
        else:
            self.account = account

    @property
    def address(self) -> Optional[str]:
        return self.account.address if self.account is not None else None

    def require_account(self) -> Any:
        if self.account is None:
            raise PreconditionError("A signer is required for write operations")
        return self.account

    def normalize_address(self, address: str) -> str:
        return normalize_address(address)

    def checksum(self, address: str) -> str:
        return to_checksum_address(address)

    def keccak256(self, data: bytes) -> bytes:
        return keccak(data)

    def get_contract(self, address: str, abi: List[Dict[str, Any]]):
        return self.w3.eth.contract(address=to_checksum_address(address), abi=abi)

    async def call_contract(self, contract, method: str, *args) -> Any:
        """Call a view function."""
        return await contract.functions[method](*args).call()

    async def transact_contract(self, contract, method: str, *args) -> TransactionHandle:
        """Sign and submit a state-changing call."""
        account = self.require_account()
        function = contract.functions[method](*args)
        nonce = await self.w3.eth.get_transaction_count(account.address, "pending")
        tx = await function.build_transaction({
            "from": account.address,
            "nonce": nonce,
            "chainId": self.chain_id,
        })
        signed = account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = "0x" + bytes(tx_hash).hex()
        logger.debug(f"Submitted {method} transaction {tx_hex}")
        return TransactionHandle(self, tx_hex)

    async def wait_for_transaction(self, tx_hash: str, timeout: float = TIMEOUTS["transactionWait"]) -> Dict[str, Any]:
        return dict(await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout))

    async def get_block_number(self) -> int:
        return await self.w3.eth.block_number

    async def get_events(
        self,
        contract,
        event_name: str,
        from_block: int,
        to_block: Any = "latest",
        argument_filters: Optional[Dict[str, Any]] = None,
    ) -> List[Any]:
        """Fetch decoded logs for one event over a block range."""
        return await contract.events[event_name].get_logs(
            argument_filters=argument_filters,
            from_block=from_block,
            to_block=to_block,
        )

    async def close(self) -> None:
        await self.w3.provider.disconnect()

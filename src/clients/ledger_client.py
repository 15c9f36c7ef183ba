# src/clients/ledger_client.py

from __future__ import annotations

import asyncio
from typing import Any, List, Optional

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3

from clients.ledger_abi import FLOW_ABI, INFERENCE_REGISTRY_ABI
from common.errors import StorageError, SubmissionError
from common.logging_utils import log_event
from common.schemas.inference_request import InferenceRequest, OnChainRequest
from common.schemas.inference_result import InferenceResult, SubmissionReceipt


def to_hex32(value: Any) -> str:
    """bytes32 from web3 (bytes / HexBytes / str) as 0x-prefixed lowercase hex."""
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value
    return "0x" + bytes(value).hex()


def to_bytes32(value: str) -> bytes:
    raw = bytes.fromhex(value[2:] if value.lower().startswith("0x") else value)
    if len(raw) != 32:
        raise ValueError("expected a 32-byte hash")
    return raw


def request_from_event(event: Any) -> InferenceRequest:
    """Map an InferenceRequested log entry to an InferenceRequest."""
    args = event["args"]
    return InferenceRequest(
        request_id=int(args["requestId"]),
        requester=str(args["requester"]),
        prompt_hash=to_hex32(args["promptHash"]),
        model_id=str(args["modelId"]),
        timestamp=int(args["timestamp"]),
    )


def request_from_view(raw: Any) -> OnChainRequest:
    requester, prompt_hash, model_id, timestamp, fulfilled = raw
    return OnChainRequest(
        requester=str(requester),
        prompt_hash=to_hex32(prompt_hash),
        model_id=str(model_id),
        timestamp=int(timestamp),
        fulfilled=bool(fulfilled),
    )


def result_from_view(raw: Any) -> InferenceResult:
    result_hash, storage_pointer, node, timestamp = raw
    return InferenceResult(
        result_hash=to_hex32(result_hash),
        storage_pointer=str(storage_pointer),
        node=str(node),
        timestamp=int(timestamp),
    )


class LedgerClient:
    """
    Async client for the InferenceRegistry contract (and the storage flow
    contract, which lives on the same chain and is paid by the same key).

    All writes go through `_send`, which serializes nonce allocation so
    concurrent pipelines never sign two transactions with the same nonce.
    Waiting for receipts happens outside that lock.
    """

    def __init__(
        self,
        *,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        flow_contract_address: Optional[str] = None,
        request_timeout_s: float = 15.0,
        receipt_timeout_s: float = 120.0,
    ):
        self.rpc_url = rpc_url
        self.receipt_timeout_s = receipt_timeout_s
        self.w3 = AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout_s)},
            )
        )
        self.account: LocalAccount = Account.from_key(private_key)
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=INFERENCE_REGISTRY_ABI,
        )
        self.flow_contract = (
            self.w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(flow_contract_address),
                abi=FLOW_ABI,
            )
            if flow_contract_address
            else None
        )
        self._send_lock = asyncio.Lock()
        self._event_filter = None

    @property
    def node_address(self) -> str:
        return self.account.address

    # -------------------------
    # Reads
    # -------------------------
    async def total_requests(self) -> int:
        return int(await self.contract.functions.totalRequests().call())

    async def get_request(self, request_id: int) -> OnChainRequest:
        raw = await self.contract.functions.getRequest(int(request_id)).call()
        return request_from_view(raw)

    async def get_result(self, request_id: int) -> InferenceResult:
        raw = await self.contract.functions.getResult(int(request_id)).call()
        return result_from_view(raw)

    # -------------------------
    # Live subscription
    # -------------------------
    async def install_request_filter(self) -> None:
        self._event_filter = await self.contract.events.InferenceRequested.create_filter(
            from_block="latest"
        )

    async def poll_requested_events(self) -> List[InferenceRequest]:
        """
        New InferenceRequested events since the last poll.

        Installs the filter on first use. If the node dropped the filter the
        call raises; the caller resets it with `reset_request_filter()`.
        """
        if self._event_filter is None:
            await self.install_request_filter()
        entries = await self._event_filter.get_new_entries()
        return [request_from_event(entry) for entry in entries]

    def reset_request_filter(self) -> None:
        self._event_filter = None

    # -------------------------
    # Writes
    # -------------------------
    async def _send(self, fn, *, value: int = 0) -> SubmissionReceipt:
        async with self._send_lock:
            nonce = await self.w3.eth.get_transaction_count(self.node_address, "pending")
            tx = await fn.build_transaction(
                {
                    "from": self.node_address,
                    "nonce": nonce,
                    "value": value,
                    "chainId": await self.w3.eth.chain_id,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hex = to_hex32(tx_hash)
        receipt = await self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.receipt_timeout_s
        )
        if receipt["status"] != 1:
            raise RuntimeError(f"transaction reverted: {tx_hex}")
        return SubmissionReceipt(tx_hash=tx_hex, block_number=int(receipt["blockNumber"]))

    async def submit_result(
        self, request_id: int, result_hash: str, storage_pointer: str
    ) -> SubmissionReceipt:
        fn = self.contract.functions.submitResult(
            int(request_id), to_bytes32(result_hash), storage_pointer
        )
        try:
            receipt = await self._send(fn)
        except Exception as e:
            raise SubmissionError(f"submit_result_failed: {e!r}") from e

        log_event(
            "ledger_result_confirmed",
            request_id=request_id,
            node_id=self.node_address,
            extra={"tx_hash": receipt.tx_hash, "block": receipt.block_number},
        )
        return receipt

    async def submit_flow_root(self, root: str, length: int) -> str:
        """Register a storage merkle root with the flow contract; returns the tx hash."""
        if self.flow_contract is None:
            raise StorageError("flow contract not configured")
        submission = (int(length), b"", [(to_bytes32(root), 0)])
        try:
            receipt = await self._send(self.flow_contract.functions.submit(submission))
        except Exception as e:
            raise StorageError(f"flow_submit_failed: {e!r}") from e
        return receipt.tx_hash

# src/clients/storage_client.py

"""
Client for the content-addressed storage indexer.

Content addresses are computed locally, before anything is sent: the data is
cut into 256-byte chunks (the last one zero-padded), each chunk is hashed with
keccak256, and the leaves are folded pairwise into a merkle root (an odd node
is carried up unchanged). Identical bytes always give the identical root, which
is what lets publication skip uploads of content the network already has.

Uploading is two steps: the root is registered with the flow contract (a
ledger transaction, injected as `register_root`) and then the bytes are
posted to the indexer.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from common.errors import StorageError
from common.hashing import keccak_hex
from common.logging_utils import log_event

CHUNK_SIZE = 256

RegisterRoot = Callable[[str, int], Awaitable[str]]


def _keccak(data: bytes) -> bytes:
    return bytes.fromhex(keccak_hex(data)[2:])


def merkle_root(data: bytes) -> str:
    chunks = [data[i : i + CHUNK_SIZE] for i in range(0, len(data), CHUNK_SIZE)] or [b""]
    layer: List[bytes] = [_keccak(chunk.ljust(CHUNK_SIZE, b"\x00")) for chunk in chunks]

    while len(layer) > 1:
        nxt: List[bytes] = []
        for i in range(0, len(layer), 2):
            if i + 1 < len(layer):
                nxt.append(_keccak(layer[i] + layer[i + 1]))
            else:
                nxt.append(layer[i])
        layer = nxt

    return "0x" + layer[0].hex()


class _TransientStorageError(Exception):
    pass


class StorageClient:
    def __init__(
        self,
        *,
        endpoint: str,
        register_root: Optional[RegisterRoot] = None,
        timeout_s: float = 30.0,
        max_attempts: int = 2,
        retry_wait_s: float = 0.5,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.register_root = register_root
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_wait_s = max(0.0, float(retry_wait_s))
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _retryer(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_s, max=4),
            retry=retry_if_exception_type(
                (aiohttp.ClientError, asyncio.TimeoutError, _TransientStorageError)
            ),
            reraise=True,
        )

    def content_address(self, data: bytes) -> str:
        return merkle_root(data)

    async def exists(self, root: str) -> bool:
        """Whether the indexer already knows a file with this root."""

        async def _once() -> bool:
            async with self._get_session().get(
                f"{self.endpoint}/file/info/{root}", timeout=self.timeout
            ) as resp:
                if resp.status == 404:
                    return False
                if resp.status >= 500:
                    raise _TransientStorageError(f"indexer_http_{resp.status}")
                if resp.status != 200:
                    raise StorageError(f"indexer_file_info_error: {resp.status}")
                info = await resp.json(content_type=None)
                return bool(info)

        return await self._call("file_info", _once)

    async def upload(self, data: bytes, root: str) -> Optional[str]:
        """
        Register the root with the flow contract, then upload the bytes.
        Returns the flow transaction hash (None when no flow contract is wired).
        """
        tx_hash = None
        if self.register_root is not None:
            tx_hash = await self.register_root(root, len(data))

        async def _once() -> None:
            async with self._get_session().post(
                f"{self.endpoint}/file/upload",
                params={"root": root},
                data=data,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.timeout,
            ) as resp:
                if resp.status >= 500:
                    raise _TransientStorageError(f"indexer_http_{resp.status}")
                if resp.status not in (200, 201):
                    raise StorageError(f"indexer_upload_error: {resp.status}")

        await self._call("upload", _once)
        log_event(
            "storage_upload_completed",
            extra={"root": root, "bytes": len(data), "flow_tx": tx_hash or "none"},
        )
        return tx_hash

    async def download(self, root: str) -> bytes:
        async def _once() -> bytes:
            async with self._get_session().get(
                f"{self.endpoint}/download/{root}", timeout=self.timeout
            ) as resp:
                if resp.status >= 500:
                    raise _TransientStorageError(f"indexer_http_{resp.status}")
                if resp.status != 200:
                    raise StorageError(f"indexer_download_error: {resp.status}")
                return await resp.read()

        return await self._call("download", _once)

    async def _call(self, op: str, fn):
        try:
            async for attempt in self._retryer():
                with attempt:
                    return await fn()
        except (aiohttp.ClientError, asyncio.TimeoutError, _TransientStorageError) as e:
            raise StorageError(f"indexer_{op}_failed: {e!r}") from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

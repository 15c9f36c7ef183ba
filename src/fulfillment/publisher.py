# src/fulfillment/publisher.py

from __future__ import annotations

from typing import Optional, Protocol

from common.errors import StorageError
from common.logging_utils import log_event
from common.schemas.audit_package import AuditPackage
from common.schemas.storage_pointer import ContentAddress, DegradedPointer, StoragePointer


class ContentStorage(Protocol):
    def content_address(self, data: bytes) -> str: ...

    async def exists(self, root: str) -> bool: ...

    async def upload(self, data: bytes, root: str) -> Optional[str]: ...


class ContentPublisher:
    """
    Publishes audit packages to content-addressed storage.

    - The content address is derived before any upload, so content the
      network already holds is never uploaded twice.
    - Storage trouble never fails the request: the publisher returns a
      DegradedPointer built from the result hash, and logs a warning, so the
      request still gets fulfilled on the ledger in a visibly unverifiable
      state.
    """

    def __init__(self, storage: Optional[ContentStorage]):
        self.storage = storage

    async def publish(self, package: AuditPackage) -> StoragePointer:
        data = package.to_bytes()

        if self.storage is None:
            return self._degrade(package, "storage not configured")

        try:
            root = self.storage.content_address(data)

            if await self.storage.exists(root):
                log_event(
                    "publication_deduplicated",
                    request_id=package.request_id,
                    extra={"root": root},
                )
                return ContentAddress(root, uploaded=False)

            flow_tx = await self.storage.upload(data, root)
        except StorageError as e:
            return self._degrade(package, repr(e))
        except Exception as e:
            # anything else from the storage layer degrades too
            return self._degrade(package, repr(e), exc_info=True)

        log_event(
            "publication_completed",
            request_id=package.request_id,
            extra={"root": root, "bytes": len(data), "flow_tx": flow_tx or "none"},
        )
        return ContentAddress(root)

    def _degrade(self, package: AuditPackage, error: str, exc_info: bool = False) -> DegradedPointer:
        pointer = DegradedPointer.from_result_hash(package.result_hash)
        log_event(
            "publication_degraded",
            request_id=package.request_id,
            error=error,
            extra={"pointer": pointer.value, "degraded": True},
            level="warning",
            exc_info=exc_info,
        )
        return pointer

# src/node/verify_cli.py
import argparse
import asyncio
import json
import sys

from clients.ledger_client import LedgerClient
from clients.storage_client import StorageClient
from common.config import config
from common.encryption import generate_private_key
from common.errors import StorageError
from common.logging_utils import log_event
from common.schemas.storage_pointer import ContentAddress, parse_storage_pointer
from common.verification import VerificationReport, verify_audit_package


async def verify_request(request_id: int, *, rpc_url: str, contract_address: str, storage_endpoint: str) -> dict:
    # Reads only; any key will do for the client
    ledger = LedgerClient(
        rpc_url=rpc_url,
        contract_address=contract_address,
        private_key=config.PRIVATE_KEY or generate_private_key(),
        request_timeout_s=config.RPC_TIMEOUT_MS / 1000.0,
    )
    result = await ledger.get_result(request_id)

    report = VerificationReport(ok=False, reasons=["degraded_pointer"])
    pointer = parse_storage_pointer(result.storage_pointer)
    if isinstance(pointer, ContentAddress) and not storage_endpoint:
        report = VerificationReport(ok=False, reasons=["storage_not_configured"])
    elif isinstance(pointer, ContentAddress):
        storage = StorageClient(endpoint=storage_endpoint, timeout_s=config.STORAGE_TIMEOUT_MS / 1000.0)
        try:
            data = await storage.download(pointer.root)
            report = verify_audit_package(data, result, request_id)
        except StorageError as e:
            log_event("verify_download_failed", request_id=request_id, error=repr(e), level="warning")
            report = VerificationReport(ok=False, reasons=["download_failed"])
        finally:
            await storage.close()

    return {
        "requestId": request_id,
        "resultHash": result.result_hash,
        "storagePointer": result.storage_pointer,
        "node": result.node,
        "ok": report.ok,
        "checks": report.checks,
        "reasons": report.reasons,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Verify a fulfilled inference request")
    parser.add_argument("--request-id", type=int, required=True)
    parser.add_argument("--rpc-url", type=str, default=config.RPC_URL)
    parser.add_argument("--contract", type=str, default=config.CONTRACT_ADDRESS)
    parser.add_argument("--storage", type=str, default=config.STORAGE_ENDPOINT)
    args = parser.parse_args()

    if not args.contract:
        parser.error("--contract (or VERIFAI_CONTRACT_ADDRESS) is required")

    summary = asyncio.run(
        verify_request(
            args.request_id,
            rpc_url=args.rpc_url,
            contract_address=args.contract,
            storage_endpoint=args.storage,
        )
    )
    print(json.dumps(summary, indent=2))
    sys.exit(0 if summary["ok"] else 1)


if __name__ == "__main__":
    main()

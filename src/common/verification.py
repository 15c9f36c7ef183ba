# src/common/verification.py

"""
Independent checks a third party can run against a fulfilled request.

Given the ledger's result record and the bytes fetched from storage, confirm
that the bytes are what the pointer names, that they describe this request,
and that the committed hash is the hash of the output they contain.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from clients.storage_client import merkle_root
from common.hashing import commitment_hash, hashes_equal
from common.schemas.audit_package import AuditPackage
from common.schemas.inference_result import InferenceResult
from common.schemas.storage_pointer import ContentAddress, parse_storage_pointer


@dataclass
class VerificationReport:
    ok: bool
    checks: Dict[str, bool] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)


def verify_output(output: str, result_hash: str) -> bool:
    return hashes_equal(commitment_hash(output), result_hash)


def verify_audit_package(data: bytes, result: InferenceResult, request_id: int) -> VerificationReport:
    report = VerificationReport(ok=False)

    pointer = parse_storage_pointer(result.storage_pointer)
    report.checks["content_address"] = isinstance(pointer, ContentAddress)
    if not isinstance(pointer, ContentAddress):
        report.reasons.append("degraded_pointer")
        return report

    report.checks["address_matches"] = hashes_equal(merkle_root(data), pointer.root)
    if not report.checks["address_matches"]:
        report.reasons.append("content_address_mismatch")

    try:
        package = AuditPackage.from_bytes(data)
    except (ValueError, KeyError, TypeError) as e:
        report.checks["package_parsed"] = False
        report.reasons.append(f"malformed_package: {e!r}")
        return report
    report.checks["package_parsed"] = True

    report.checks["request_id_matches"] = package.request_id == int(request_id)
    if not report.checks["request_id_matches"]:
        report.reasons.append("request_id_mismatch")

    report.checks["result_hash_matches"] = hashes_equal(package.result_hash, result.result_hash)
    if not report.checks["result_hash_matches"]:
        report.reasons.append("result_hash_mismatch")

    report.checks["output_hash_matches"] = verify_output(package.output, result.result_hash)
    if not report.checks["output_hash_matches"]:
        report.reasons.append("output_hash_mismatch")

    report.ok = not report.reasons
    return report

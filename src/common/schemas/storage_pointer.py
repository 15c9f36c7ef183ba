import re
from dataclasses import dataclass
from typing import Union

FALLBACK_PREFIX = "FALLBACK:"

_CONTENT_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class ContentAddress:
    """A real storage root: the published bytes can be fetched and re-hashed."""

    root: str
    uploaded: bool = True  # False when the content already existed

    @property
    def verifiable(self) -> bool:
        return True

    def to_wire(self) -> str:
        return self.root


@dataclass(frozen=True)
class DegradedPointer:
    """
    Stand-in written when storage was unavailable. The request is still
    fulfilled on the ledger, but nobody can fetch the audit record.
    """

    value: str

    @property
    def verifiable(self) -> bool:
        return False

    def to_wire(self) -> str:
        return self.value

    @classmethod
    def from_result_hash(cls, result_hash: str) -> "DegradedPointer":
        return cls(f"{FALLBACK_PREFIX}{result_hash[:32]}")


StoragePointer = Union[ContentAddress, DegradedPointer]


def is_content_address(value: str) -> bool:
    return bool(_CONTENT_ADDRESS_RE.match(value or ""))


def parse_storage_pointer(value: str) -> StoragePointer:
    """Map a pointer string read from the ledger back to its variant."""
    if is_content_address(value):
        return ContentAddress(value.lower())
    # FALLBACK:, the legacy 0G_PENDING marker, empty, or anything else we did not write as a root
    return DegradedPointer(value or "")

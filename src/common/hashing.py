# src/common/hashing.py

"""
Commitment hashing.

The result hash submitted to the ledger is keccak256 over the exact UTF-8
bytes of the provider's output text: no JSON wrapping, no whitespace
normalization, no metadata. A verifier reproduces it with
`ethers.keccak256(ethers.toUtf8Bytes(output))` or `commitment_hash(output)`.
"""

from __future__ import annotations

from web3 import Web3


def keccak_hex(data: bytes) -> str:
    """keccak256 of raw bytes as a 0x-prefixed, lowercase 32-byte hex string."""
    return "0x" + bytes(Web3.keccak(data)).hex()


def commitment_hash(text: str) -> str:
    return keccak_hex(text.encode("utf-8"))


def prompt_hash(prompt: str) -> str:
    """Same construction the client uses for the on-chain prompt commitment."""
    return commitment_hash(prompt)


def hashes_equal(a: str, b: str) -> bool:
    return a.strip().lower().removeprefix("0x") == b.strip().lower().removeprefix("0x")

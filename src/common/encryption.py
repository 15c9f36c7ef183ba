# src/common/encryption.py

"""
Encryption utilities for prompts sent to the worker through the registry bridge.

The client encrypts a prompt for the worker with ECIES on secp256k1, the same
scheme eth-crypto / eccrypto use, so a browser wallet can produce envelopes
with `EthCrypto.encryptWithPublicKey(workerPublicKey, prompt)`:
    * Client generates an ephemeral secp256k1 keypair.
    * ECDH(ephemeral private, worker public) -> shared x coordinate (32 bytes).
    * SHA-512(shared) -> encryption key (first 32 bytes) || MAC key (last 32).
    * AES-256-CBC (PKCS7) encrypts the plaintext under a random 16-byte IV.
    * HMAC-SHA256(MAC key, iv || ephemPublicKey || ciphertext) authenticates it.

The envelope travels as four hex strings: iv, ephemPublicKey (65-byte
uncompressed point), ciphertext and mac.

The worker's keypair is its ledger signing key, so the public key it
advertises on /health is the one its on-chain address derives from.

This module does NOT log or persist plaintext anywhere.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from common.schemas.encrypted_payload import EncryptedEnvelope


CURVE = ec.SECP256K1()
IV_SIZE = 16
AES_BLOCK_BITS = 128


# -------------------------------------------------------------------------
# Worker keypair (the ledger signing key)
# -------------------------------------------------------------------------


def _strip_0x(value: str) -> str:
    value = value.strip()
    return value[2:] if value[:2].lower() == "0x" else value


def load_private_key(private_key_hex: str) -> ec.EllipticCurvePrivateKey:
    """
    Load a secp256k1 private key from its 32-byte hex form (with or without 0x).
    """
    raw = bytes.fromhex(_strip_0x(private_key_hex))
    if len(raw) != 32:
        raise ValueError("secp256k1 private key must be 32 bytes")
    return ec.derive_private_key(int.from_bytes(raw, "big"), CURVE)


def generate_private_key() -> str:
    """
    Generates a fresh secp256k1 private key, returned as 0x-prefixed hex.
    """
    key = ec.generate_private_key(CURVE)
    return "0x" + key.private_numbers().private_value.to_bytes(32, "big").hex()


def public_key_hex(private_key_hex: str) -> str:
    """
    Returns the worker's public key in the format eth-crypto expects:
    the uncompressed point without the leading 0x04 byte (64 bytes, hex).
    """
    public_key = load_private_key(private_key_hex).public_key()
    point = public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return point[1:].hex()


def _load_public_key(public_key: bytes) -> ec.EllipticCurvePublicKey:
    # eth-crypto hands out 64-byte keys; eccrypto puts 65-byte points on the wire
    if len(public_key) == 64:
        public_key = b"\x04" + public_key
    return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, public_key)


def _derive_keys(
    private_key: ec.EllipticCurvePrivateKey,
    peer_public_key: ec.EllipticCurvePublicKey,
) -> tuple[bytes, bytes]:
    shared_x = private_key.exchange(ec.ECDH(), peer_public_key)
    digest = hashes.Hash(hashes.SHA512())
    digest.update(shared_x)
    key_material = digest.finalize()
    return key_material[:32], key_material[32:]


def _mac(mac_key: bytes, data: bytes) -> hmac.HMAC:
    h = hmac.HMAC(mac_key, hashes.SHA256())
    h.update(data)
    return h


# -------------------------------------------------------------------------
# ECIES
# -------------------------------------------------------------------------


def encrypt_for_worker(plaintext: bytes, worker_public_key_hex: str) -> EncryptedEnvelope:
    """
    Encrypt `plaintext` for the worker identified by its public key.

    This is what the client does before POSTing to /register-prompt; the
    worker itself only ever decrypts. Kept here so tooling and tests can
    produce envelopes without a browser.
    """
    if not isinstance(plaintext, (bytes, bytearray)):
        raise TypeError("encrypt_for_worker() expects plaintext as bytes")

    worker_public = _load_public_key(bytes.fromhex(_strip_0x(worker_public_key_hex)))

    ephemeral = ec.generate_private_key(CURVE)
    ephem_public = ephemeral.public_key().public_bytes(
        Encoding.X962, PublicFormat.UncompressedPoint
    )
    enc_key, mac_key = _derive_keys(ephemeral, worker_public)

    iv = os.urandom(IV_SIZE)
    padder = padding.PKCS7(AES_BLOCK_BITS).padder()
    padded = padder.update(bytes(plaintext)) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    mac = _mac(mac_key, iv + ephem_public + ciphertext).finalize()

    return EncryptedEnvelope(
        iv=iv.hex(),
        ephem_public_key=ephem_public.hex(),
        ciphertext=ciphertext.hex(),
        mac=mac.hex(),
    )


def decrypt_at_worker(envelope: EncryptedEnvelope, worker_private_key_hex: str) -> str:
    """
    Decrypt an envelope produced by eth-crypto's encryptWithPublicKey.

    Steps:
      1. ECDH between the worker key and the envelope's ephemeral public key.
      2. SHA-512 the shared secret into the AES and MAC keys.
      3. Verify the MAC before touching the ciphertext.
      4. AES-256-CBC decrypt and strip PKCS7 padding.

    Any failure is raised as ValueError("Decryption failed") so callers never
    see partial plaintext or padding oracles.
    """
    try:
        iv = bytes.fromhex(_strip_0x(envelope.iv))
        ephem_public = bytes.fromhex(_strip_0x(envelope.ephem_public_key))
        ciphertext = bytes.fromhex(_strip_0x(envelope.ciphertext))
        mac = bytes.fromhex(_strip_0x(envelope.mac))

        if len(iv) != IV_SIZE:
            raise ValueError("Invalid IV length")

        private_key = load_private_key(worker_private_key_hex)
        enc_key, mac_key = _derive_keys(private_key, _load_public_key(ephem_public))

        _mac(mac_key, iv + ephem_public + ciphertext).verify(mac)

        decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except (ValueError, InvalidSignature, UnicodeDecodeError) as e:
        raise ValueError("Decryption failed") from e

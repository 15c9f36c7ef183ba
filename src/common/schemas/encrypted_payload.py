from dataclasses import dataclass
from typing import Any, Dict, Mapping

@dataclass(frozen=True)
class EncryptedEnvelope:
    """
    ECIES envelope as produced by eth-crypto's encryptWithPublicKey.
    All fields are hex strings; the client posts it as the `prompt`
    of a registry entry instead of the plaintext.
    """
    iv: str
    ephem_public_key: str
    ciphertext: str
    mac: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EncryptedEnvelope":
        return cls(
            iv=str(data["iv"]),
            ephem_public_key=str(data["ephemPublicKey"]),
            ciphertext=str(data["ciphertext"]),
            mac=str(data["mac"]),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "iv": self.iv,
            "ephemPublicKey": self.ephem_public_key,
            "ciphertext": self.ciphertext,
            "mac": self.mac,
        }

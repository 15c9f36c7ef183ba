from dataclasses import dataclass
from typing import Optional, Union

from common.schemas.encrypted_payload import EncryptedEnvelope


@dataclass(frozen=True)
class RegistryEntry:
    """
    A prompt registered through the bridge, keyed by the request id the
    client expects the ledger to assign. The ledger only stores the
    prompt's hash; this is how the worker learns the prompt itself.
    """

    request_id: int
    prompt: Union[str, EncryptedEnvelope]
    prompt_hash: Optional[str] = None

    @property
    def encrypted(self) -> bool:
        return isinstance(self.prompt, EncryptedEnvelope)

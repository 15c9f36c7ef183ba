# src/bridge/request_models.py

from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from common.schemas.encrypted_payload import EncryptedEnvelope
from common.schemas.registry_entry import RegistryEntry


class EnvelopeBody(BaseModel):
    iv: str = Field(..., min_length=1)
    ephemPublicKey: str = Field(..., min_length=1)
    ciphertext: str = Field(..., min_length=1)
    mac: str = Field(..., min_length=1)

    def to_envelope(self) -> EncryptedEnvelope:
        return EncryptedEnvelope.from_mapping(self.model_dump())


class RegisterPromptRequest(BaseModel):
    request_id: int = Field(..., alias="requestId", ge=0, examples=[3])
    prompt: Union[EnvelopeBody, str] = Field(..., examples=["What is the answer?"])
    prompt_hash: Optional[str] = Field(None, alias="promptHash")

    @field_validator("prompt")
    @classmethod
    def _prompt_not_empty(cls, value):
        if isinstance(value, str) and not value:
            raise ValueError("prompt must not be empty")
        return value

    def to_entry(self) -> RegistryEntry:
        prompt = self.prompt.to_envelope() if isinstance(self.prompt, EnvelopeBody) else self.prompt
        return RegistryEntry(
            request_id=self.request_id,
            prompt=prompt,
            prompt_hash=self.prompt_hash,
        )


class HealthResponse(BaseModel):
    status: str = "ok"
    node: str
    public_key: Optional[str] = Field(None, alias="publicKey")

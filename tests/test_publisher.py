# tests/test_publisher.py

import asyncio

from clients.storage_client import merkle_root
from common.hashing import commitment_hash
from common.schemas.audit_package import AuditPackage
from common.schemas.storage_pointer import ContentAddress, DegradedPointer
from fakes import NODE, FakeStorage
from fulfillment.publisher import ContentPublisher


def make_package(output: str = "The answer is 42.") -> AuditPackage:
    return AuditPackage(
        request_id=7,
        prompt_hash="0x" + "ab" * 32,
        prompt="What is the answer?",
        model="llama3-8b-8192",
        output=output,
        result_hash=commitment_hash(output),
        timestamp_ms=1_700_000_000_000,
        node=NODE,
    )


def test_identical_content_uploaded_once():
    storage = FakeStorage()
    publisher = ContentPublisher(storage)
    package = make_package()

    first = asyncio.run(publisher.publish(package))
    second = asyncio.run(publisher.publish(package))

    assert isinstance(first, ContentAddress) and first.uploaded
    assert isinstance(second, ContentAddress) and not second.uploaded
    assert first.root == second.root == merkle_root(package.to_bytes())
    assert storage.uploads == 1


def test_different_content_gets_different_address():
    storage = FakeStorage()
    publisher = ContentPublisher(storage)

    a = asyncio.run(publisher.publish(make_package("a")))
    b = asyncio.run(publisher.publish(make_package("b")))

    assert a.root != b.root
    assert storage.uploads == 2


def test_storage_failure_degrades():
    package = make_package()
    pointer = asyncio.run(ContentPublisher(FakeStorage(broken=True)).publish(package))

    assert isinstance(pointer, DegradedPointer)
    assert pointer.verifiable is False
    assert pointer.to_wire() == "FALLBACK:" + package.result_hash[:32]


def test_unexpected_storage_error_degrades():
    class ExplodingStorage(FakeStorage):
        async def upload(self, data, root):
            raise OSError("disk on fire")

    pointer = asyncio.run(ContentPublisher(ExplodingStorage()).publish(make_package()))
    assert isinstance(pointer, DegradedPointer)


def test_no_storage_configured_degrades():
    pointer = asyncio.run(ContentPublisher(None).publish(make_package()))
    assert isinstance(pointer, DegradedPointer)


def test_package_bytes_are_canonical():
    package = make_package()
    data = package.to_bytes()

    assert data == make_package().to_bytes()
    assert data.startswith(b'{"model":')
    assert b" " not in data.replace(b"The answer is 42.", b"").replace(b"What is the answer?", b"")
    assert AuditPackage.from_bytes(data) == package

import pytest

from wacore.adapters.blob_store import LocalBlobStore
from wacore.adapters.fanout import FanoutChannel


class _Socket:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.accepted = False
        self.sent: list[dict] = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("closed")
        self.sent.append(data)


@pytest.mark.asyncio
async def test_publish_reaches_only_the_tenant():
    fanout = FanoutChannel()
    a, b = _Socket(), _Socket()
    await fanout.connect(a, "c1")
    await fanout.connect(b, "c2")

    await fanout.publish("c1", {"type": "message_received"})

    assert a.accepted
    assert a.sent == [{"type": "message_received"}]
    assert b.sent == []


@pytest.mark.asyncio
async def test_dead_socket_is_dropped_without_raising():
    fanout = FanoutChannel()
    good, dead = _Socket(), _Socket(fail=True)
    await fanout.connect(good, "c1")
    await fanout.connect(dead, "c1")

    await fanout.publish("c1", {"type": "whatsapp_status"})

    assert fanout.subscriber_count("c1") == 1
    assert good.sent
    fanout.disconnect(good, "c1")
    assert fanout.subscriber_count("c1") == 0
    await fanout.publish("c1", {"type": "ignored"})


@pytest.mark.asyncio
async def test_blob_store_put_exists_delete(tmp_path):
    store = LocalBlobStore(tmp_path, "/files/")
    url = await store.put("attachments/a.bin", b"data")
    assert url == "/files/attachments/a.bin"
    assert (tmp_path / "attachments" / "a.bin").read_bytes() == b"data"
    assert await store.exists("attachments/a.bin")
    await store.delete("attachments/a.bin")
    await store.delete("attachments/a.bin")
    assert not await store.exists("attachments/a.bin")


def test_blob_store_rejects_escaping_keys(tmp_path):
    store = LocalBlobStore(tmp_path / "root")
    with pytest.raises(ValueError):
        store._path("../outside.bin")

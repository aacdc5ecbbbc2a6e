import asyncio
import threading

import pytest

from mcpbridge.services.audit_sink import AuditSink, make_entry, write_entries


class RecordingWriter:
    def __init__(self, failures: int = 0) -> None:
        self.batches = []
        self.failures = failures

    def __call__(self, entries):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("storage unavailable")
        self.batches.append([e.resource for e in entries])


def _entry(n: int):
    return make_entry("bridge-1", "proxy", f"GET /items/{n}", True)


def test_record_without_a_loop_only_queues():
    writer = RecordingWriter()
    sink = AuditSink(writer, batch_size=2)
    sink.record(_entry(1))
    sink.record(_entry(2))
    assert sink.pending == 2
    assert writer.batches == []


@pytest.mark.asyncio
async def test_full_batch_is_flushed_in_the_background():
    writer = RecordingWriter()
    sink = AuditSink(writer, batch_size=3, flush_interval=60)
    for n in range(3):
        sink.record(_entry(n))

    for _ in range(20):
        if writer.batches:
            break
        await asyncio.sleep(0.01)

    assert writer.batches == [["GET /items/0", "GET /items/1", "GET /items/2"]]
    assert sink.pending == 0
    await sink.aclose()


@pytest.mark.asyncio
async def test_entries_recorded_during_a_write_get_their_own_flush():
    started = threading.Event()
    release = threading.Event()
    batches = []

    def slow_writer(entries):
        started.set()
        release.wait(5)
        batches.append([e.resource for e in entries])

    sink = AuditSink(slow_writer, batch_size=1, flush_interval=60)
    sink.record(_entry(1))
    await asyncio.to_thread(started.wait, 5)

    sink.record(_entry(2))
    release.set()

    for _ in range(100):
        if len(batches) == 2:
            break
        await asyncio.sleep(0.01)

    assert batches == [["GET /items/1"], ["GET /items/2"]]
    assert sink.pending == 0
    await sink.aclose()


@pytest.mark.asyncio
async def test_idle_interval_flushes_a_partial_batch():
    writer = RecordingWriter()
    sink = AuditSink(writer, batch_size=100, flush_interval=0.01)
    sink.record(_entry(1))

    for _ in range(50):
        if writer.batches:
            break
        await asyncio.sleep(0.01)

    assert writer.batches == [["GET /items/1"]]
    await sink.aclose()


@pytest.mark.asyncio
async def test_failed_batch_is_requeued_in_order():
    writer = RecordingWriter(failures=1)
    sink = AuditSink(writer, batch_size=100, flush_interval=60)
    sink.record(_entry(1))
    sink.record(_entry(2))

    await sink.flush()
    assert writer.batches == []
    assert sink.pending == 2

    sink.record(_entry(3))
    await sink.flush()
    assert writer.batches == [["GET /items/1", "GET /items/2", "GET /items/3"]]
    await sink.aclose()


@pytest.mark.asyncio
async def test_aclose_drains_the_queue():
    writer = RecordingWriter()
    sink = AuditSink(writer, batch_size=100, flush_interval=60)
    sink.record(_entry(1))
    await sink.aclose()
    assert writer.batches == [["GET /items/1"]]
    assert sink.pending == 0


def test_recent_reads_back_persisted_entries():
    failed = make_entry(
        "bridge-1", "tools/call", "tool/get_users_list", False, error="HTTP 500", metadata={"status": 500}
    )
    write_entries([failed])
    write_entries([make_entry("bridge-2", "proxy", "GET /x", True)])

    entries = AuditSink().recent("bridge-1")
    assert len(entries) == 1
    assert entries[0].resource == "tool/get_users_list"
    assert entries[0].success is False
    assert entries[0].metadata == {"status": 500}

import logging
import threading
import time

import pytest

from classes.command_queue import CommandQueue, Mailbox
from classes.entities import Command
from classes.relay_errors import SessionNotFound
from classes.session_registry import SessionRegistry


def _cmd(n: int, **extra) -> Command:
    return Command(type="RUN_LUA", payload={"seq": n, **extra})


def _queue(warn_depth: int = 0):
    registry = SessionRegistry(mailbox_warn_depth=warn_depth)
    session_id = registry.register("projA")
    return registry, CommandQueue(registry), session_id


def test_drain_returns_commands_in_enqueue_order() -> None:
    _, queue, sid = _queue()
    sent = [_cmd(i) for i in range(5)]
    for c in sent:
        queue.enqueue(sid, c)

    assert [c.id for c in queue.drain(sid)] == [c.id for c in sent]


def test_second_drain_without_enqueue_is_empty() -> None:
    _, queue, sid = _queue()
    queue.enqueue(sid, _cmd(1))

    assert len(queue.drain(sid)) == 1
    assert queue.drain(sid) == []


def test_drain_on_fresh_session_is_empty_not_an_error() -> None:
    _, queue, sid = _queue()
    assert queue.drain(sid) == []


def test_enqueue_after_drain_goes_to_next_drain_only() -> None:
    _, queue, sid = _queue()
    queue.enqueue(sid, _cmd(1))
    first = queue.drain(sid)
    later = _cmd(2)
    queue.enqueue(sid, later)

    assert [c.payload["seq"] for c in first] == [1]
    assert queue.drain(sid) == [later]


def test_enqueue_to_removed_session_raises() -> None:
    registry, queue, sid = _queue()
    registry.remove(sid)

    with pytest.raises(SessionNotFound):
        queue.enqueue(sid, _cmd(1))
    with pytest.raises(SessionNotFound):
        queue.drain(sid)


def test_sessions_do_not_share_mailboxes() -> None:
    registry, queue, sid = _queue()
    other = registry.register("projA")
    queue.enqueue(sid, _cmd(1))

    assert queue.drain(other) == []
    assert len(queue.drain(sid)) == 1


def test_concurrent_enqueue_and_drain_lose_and_duplicate_nothing() -> None:
    _, queue, sid = _queue()
    producers, per_producer = 4, 250
    delivered = []
    done = threading.Event()

    def produce(p: int) -> None:
        for i in range(per_producer):
            queue.enqueue(sid, _cmd(i, producer=p))

    def consume() -> None:
        while not done.is_set():
            delivered.extend(queue.drain(sid))
        delivered.extend(queue.drain(sid))

    consumer = threading.Thread(target=consume)
    consumer.start()
    threads = [threading.Thread(target=produce, args=(p,)) for p in range(producers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    done.set()
    consumer.join()

    assert len(delivered) == producers * per_producer
    assert len({c.id for c in delivered}) == len(delivered)
    for p in range(producers):
        seqs = [c.payload["seq"] for c in delivered if c.payload["producer"] == p]
        assert seqs == list(range(per_producer))


def test_wait_returns_false_at_deadline_when_nothing_arrives() -> None:
    mailbox = Mailbox()
    start = time.monotonic()

    assert mailbox.wait(0.1) is False
    assert time.monotonic() - start < 2.0


def test_wait_wakes_up_on_enqueue() -> None:
    mailbox = Mailbox()
    timer = threading.Timer(0.05, lambda: mailbox.enqueue(_cmd(1)))
    timer.start()
    start = time.monotonic()

    assert mailbox.wait(5.0) is True
    assert time.monotonic() - start < 2.0
    timer.join()


def test_close_releases_waiters() -> None:
    mailbox = Mailbox()
    threading.Timer(0.05, mailbox.close).start()
    start = time.monotonic()

    assert mailbox.wait(5.0) is False
    assert time.monotonic() - start < 2.0


def test_backlog_is_logged_once_per_crossing_and_nothing_is_dropped(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="devblox_relay")
    _, queue, sid = _queue(warn_depth=3)
    for i in range(6):
        queue.enqueue(sid, _cmd(i))

    warnings = [r for r in caplog.records if "backlog" in r.getMessage()]
    assert len(warnings) == 1
    assert queue.depth(sid) == 6
    assert len(queue.drain(sid)) == 6

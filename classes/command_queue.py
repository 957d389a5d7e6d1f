# classes/command_queue.py

import logging
import threading
import time
from collections import deque
from typing import List

from classes.entities import Command

logger = logging.getLogger("devblox_relay")


class Mailbox:
    """
    FIFO of undelivered commands for one session.

    - enqueue appends at the tail and wakes any waiting poller.
    - drain removes everything in one step under the lock, so a command is
      returned by exactly one drain.
    - No capacity limit. Depth at or above warn_depth is logged once per
      crossing instead of dropping commands.
    """

    def __init__(self, warn_depth: int = 0, label: str = "") -> None:
        self._cond = threading.Condition(threading.Lock())
        self._items: deque[Command] = deque()
        self._warn_depth = warn_depth
        self._warned = False
        self._label = label
        self._closed = False

    def enqueue(self, command: Command) -> int:
        with self._cond:
            self._items.append(command)
            depth = len(self._items)
            if self._warn_depth and depth >= self._warn_depth and not self._warned:
                self._warned = True
                logger.warning(
                    "Mailbox backlog for %s reached %d undelivered commands (plugin not polling?)",
                    self._label or "session",
                    depth,
                )
            self._cond.notify_all()
            return depth

    def drain(self) -> List[Command]:
        with self._cond:
            items = list(self._items)
            self._items.clear()
            self._warned = False
            return items

    def wait(self, timeout: float) -> bool:
        """
        Block until the mailbox is non-empty, it is closed, or timeout seconds
        pass. Returns True when commands are pending.
        """
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while not self._items and not self._closed:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            return bool(self._items)

    def close(self) -> None:
        # wake pollers of a removed session so they return before their deadline
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


class CommandQueue:
    """
    Session-addressed view over the mailboxes held by the SessionRegistry.
    Every call resolves the session first and fails with SessionNotFound when
    it is gone.
    """

    def __init__(self, registry) -> None:
        self.registry = registry

    def enqueue(self, session_id: str, command: Command) -> int:
        session = self.registry.get(session_id)
        depth = session.mailbox.enqueue(command)
        logger.debug("enqueue session=%s command=%s type=%s depth=%d", session_id, command.id, command.type, depth)
        return depth

    def drain(self, session_id: str) -> List[Command]:
        session = self.registry.get(session_id)
        commands = session.mailbox.drain()
        if commands:
            logger.debug("drain session=%s delivered=%d", session_id, len(commands))
        return commands

    def wait(self, session_id: str, timeout: float) -> bool:
        session = self.registry.get(session_id)
        return session.mailbox.wait(timeout)

    def depth(self, session_id: str) -> int:
        return len(self.registry.get(session_id).mailbox)

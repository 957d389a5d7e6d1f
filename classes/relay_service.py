# classes/relay_service.py

import logging
import threading
import time
from typing import Any, Dict, List, Optional

from classes import settings
from classes.command_builder import CommandBuilder
from classes.command_queue import CommandQueue
from classes.entities import Command, Identity, make_identity, require_id
from classes.event_sink import EventSink, build_event_sink
from classes.liveness_monitor import LivenessMonitor
from classes.quota_ledger import QuotaLedger
from classes.relay_errors import InvalidArgument, ProviderError, QuotaExceeded, SessionNotFound
from classes.relay_prompts import LUA_SYSTEM_PROMPT
from classes.session_registry import ProjectDirectory, SessionRegistry

logger = logging.getLogger("devblox_relay")


class RelayService:
    """
    Hands AI-generated commands from short-lived web requests to a polling
    Studio plugin.

    Per session: Registered -> (enqueue) Pending -> (poll) Drained -> Registered.

    Quota is reserved before the AI call and refunded when generation fails,
    so users are only charged for commands that reached the mailbox. No lock
    is held while the generator runs.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        ledger: QuotaLedger,
        liveness: LivenessMonitor,
        generator,
        builder: Optional[CommandBuilder] = None,
        event_sink: Optional[EventSink] = None,
        projects: Optional[ProjectDirectory] = None,
        redeem_codes: Optional[Dict[str, int]] = None,
        system_instructions: str = LUA_SYSTEM_PROMPT,
        long_poll_max_wait: float = 25.0,
    ):
        self.registry = registry
        self.queue = CommandQueue(registry)
        self.ledger = ledger
        self.liveness = liveness
        self.generator = generator
        self.builder = builder or CommandBuilder()
        self.event_sink = event_sink
        self.projects = projects or ProjectDirectory()
        self.redeem_codes = {k.lower(): v for k, v in (redeem_codes or {}).items()}
        self.system_instructions = system_instructions
        self.long_poll_max_wait = long_poll_max_wait

    # -----------------------
    # Helpers
    # -----------------------

    def _log_event(self, event: str, identity: Optional[Identity] = None, **detail: Any) -> None:
        if self.event_sink is None:
            return
        record: Dict[str, Any] = {"event": event}
        if identity is not None:
            record["project_id"] = identity.project_id
            record["session_id"] = identity.session_id
        if "quota_key" in detail:
            record["quota_key"] = detail.pop("quota_key")
        if detail:
            record["detail"] = detail
        self.event_sink.append(record)

    def _resolve(self, project_id: Any, session_id: Any) -> Identity:
        identity = make_identity(project_id, session_id)
        self.registry.lookup(identity.project_id, identity.session_id)
        return identity

    # -----------------------
    # Web front end
    # -----------------------

    def register(self, project_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        session_id = self.registry.register(project_id, metadata)
        self._log_event("register", Identity(project_id.strip(), session_id))
        return session_id

    def remove(self, session_id: str) -> bool:
        removed = self.registry.remove(session_id)
        self.liveness.forget(session_id)
        return removed

    def submit_prompt(self, project_id: str, session_id: str, prompt: Any,
                      quota_key: Optional[str] = None) -> Command:
        identity = make_identity(project_id, session_id)
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidArgument("Missing prompt")
        prompt = prompt.strip()
        self.registry.lookup(identity.project_id, identity.session_id)

        key = quota_key or identity.project_id
        try:
            reservation = self.ledger.check_and_consume(key, 1)
        except QuotaExceeded:
            self._log_event("quota_exceeded", identity, quota_key=key)
            raise

        try:
            reply = self.generator.generate(prompt, self.system_instructions)
            command = self.builder.build(prompt, reply)
            self.queue.enqueue(identity.session_id, command)
        except (ProviderError, SessionNotFound) as e:
            self.ledger.refund(key, 1, day=reservation.day)
            self._log_event("prompt_failed", identity, quota_key=key, error=str(e))
            raise
        except Exception as e:
            self.ledger.refund(key, 1, day=reservation.day)
            logger.exception("AI generation failed for %s/%s", identity.project_id, identity.session_id)
            self._log_event("prompt_failed", identity, quota_key=key, error=str(e))
            raise ProviderError(f"AI generation failed: {e}") from e

        logger.info(
            "Admitted command %s for %s/%s (quota %s: %d/%d)",
            command.id, identity.project_id, identity.session_id, key, reservation.used, reservation.max,
        )
        self._log_event("prompt", identity, quota_key=key, command_id=command.id, prompt=prompt)
        return command

    def status(self, project_id: Optional[str] = None, session_id: Optional[str] = None) -> Dict[str, bool]:
        if project_id is None and session_id is None:
            return {"connected": self.liveness.is_connected()}
        identity = self._resolve(project_id, session_id)
        return {"connected": self.liveness.is_connected(identity.session_id)}

    def usage(self, key: str) -> Dict[str, Any]:
        return self.ledger.usage(key).as_dict()

    def use(self, key: str, amount: int = 1) -> Dict[str, Any]:
        return self.ledger.check_and_consume(key, amount).as_dict()

    def redeem_code(self, key: str, code: Any) -> Dict[str, bool]:
        key = require_id(key, "quota key")
        normalized = code.strip().lower() if isinstance(code, str) else ""
        bonus = self.redeem_codes.get(normalized)
        if not normalized or bonus is None:
            return {"granted": False}
        granted = self.ledger.redeem(key, bonus, code=normalized)
        if granted:
            self._log_event("redeem", quota_key=key, code=normalized, bonus=bonus)
        return {"granted": granted}

    # -----------------------
    # Polling plugin
    # -----------------------

    def poll_commands(self, project_id: str, session_id: str, max_wait_seconds: float = 0,
                      deadline: Optional[float] = None) -> List[Command]:
        """
        deadline is a time.monotonic() value fixed when the request arrived;
        a poll that waited for a worker only gets what is left of its wait.
        """
        identity = self._resolve(project_id, session_id)
        commands = self.queue.drain(identity.session_id)
        if commands or not max_wait_seconds or max_wait_seconds <= 0:
            return commands

        wait = min(float(max_wait_seconds), self.long_poll_max_wait)
        if deadline is not None:
            wait = min(wait, deadline - time.monotonic())
        if wait <= 0:
            return []
        if self.queue.wait(identity.session_id, wait):
            return self.queue.drain(identity.session_id)
        return []

    def heartbeat(self, project_id: Optional[str] = None, session_id: Optional[str] = None) -> Dict[str, bool]:
        if project_id is not None or session_id is not None:
            identity = self._resolve(project_id, session_id)
            self.liveness.heartbeat(identity.session_id)
        # the unscoped slot answers "is any plugin connected"
        self.liveness.heartbeat()
        return {"ok": True}

    # -----------------------
    # Monitoring
    # -----------------------

    def sweep(self, warn_depth: Optional[int] = None) -> int:
        """
        Log every session whose mailbox holds at least warn_depth commands.
        Returns how many sessions are backlogged.
        """
        threshold = warn_depth if warn_depth is not None else self.registry.mailbox_warn_depth
        if not threshold:
            return 0
        backlogged = 0
        for session in self.registry.snapshot():
            depth = len(session.mailbox)
            if depth >= threshold:
                backlogged += 1
                logger.warning(
                    "Session %s/%s has %d undelivered commands",
                    session.project_id, session.session_id, depth,
                )
        return backlogged

    def health(self) -> Dict[str, Any]:
        return {
            "sessions": len(self.registry),
            "backlogged": self.sweep(),
            "plugin_connected": self.liveness.is_connected(),
        }


_RELAY: Optional[RelayService] = None
_RELAY_LOCK = threading.Lock()


def build_relay_service(generator=None, event_sink: Optional[EventSink] = None) -> RelayService:
    if generator is None:
        from classes.llm_client import ChatLlmClient

        generator = ChatLlmClient(
            settings.LLM_MODEL,
            vertex_project=settings.PROJECT_ID,
            vertex_region=settings.REGION,
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )
    if event_sink is None:
        event_sink = build_event_sink(settings.GOOGLE_SERVICE_KEY, settings.SHEET_ID)

    return RelayService(
        registry=SessionRegistry(mailbox_warn_depth=settings.MAILBOX_WARN_DEPTH),
        ledger=QuotaLedger(settings.DAILY_QUOTA_CAP),
        liveness=LivenessMonitor(settings.HEARTBEAT_TIMEOUT_SECONDS),
        generator=generator,
        event_sink=event_sink,
        redeem_codes=settings.REDEEM_CODES,
        long_poll_max_wait=settings.LONG_POLL_MAX_WAIT_SECONDS,
    )


def get_relay_service() -> RelayService:
    """Process-wide RelayService, built on first use."""
    global _RELAY
    with _RELAY_LOCK:
        if _RELAY is None:
            _RELAY = build_relay_service()
        return _RELAY

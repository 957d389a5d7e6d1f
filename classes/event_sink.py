# classes/event_sink.py

import json
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from google.oauth2 import service_account
from googleapiclient.discovery import build

logger = logging.getLogger("devblox_relay")

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class LogBackend:
    """Fallback when no spreadsheet is configured: the record goes to the log."""

    def append(self, record: Dict[str, Any]) -> None:
        logger.info("event %s", json.dumps(record, ensure_ascii=False, default=str))


class SheetsBackend:
    """
    Appends one row per record to a Google Sheet, columns in `columns` order.
    Credentials come from a service-account JSON blob.
    """

    def __init__(self, service_key_json: str, spreadsheet_id: str, *, range_: str = "A:A",
                 columns: Optional[List[str]] = None, service: Any = None):
        self.spreadsheet_id = spreadsheet_id
        self.range = range_
        self.columns = columns or ["at", "event", "project_id", "session_id", "quota_key", "detail"]
        self._service_key_json = service_key_json
        self._service = service

    def _get_service(self):
        if self._service is None:
            creds = service_account.Credentials.from_service_account_info(
                json.loads(self._service_key_json), scopes=SHEETS_SCOPES
            )
            self._service = build("sheets", "v4", credentials=creds, cache_discovery=False)
        return self._service

    def append(self, record: Dict[str, Any]) -> None:
        row = [self._cell(record.get(col)) for col in self.columns]
        self._get_service().spreadsheets().values().append(
            spreadsheetId=self.spreadsheet_id,
            range=self.range,
            valueInputOption="RAW",
            body={"values": [row]},
        ).execute()

    def _cell(self, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False, default=str)
        return str(value)


class EventSink:
    """
    Fire-and-forget, append-only event log.

    append() only puts the record on an in-process queue. A daemon worker
    hands records to the backend; backend failures are logged and dropped.
    """

    _STOP = object()

    def __init__(self, backend, *, max_queue: int = 1000) -> None:
        self.backend = backend
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue)
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._closed = False

    def start(self) -> None:
        with self._start_lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="event-sink", daemon=True)
                self._thread.start()

    def append(self, record: Dict[str, Any]) -> bool:
        if self._closed:
            return False
        self.start()
        record = dict(record)
        record.setdefault("at", _utc_now())
        try:
            self._queue.put_nowait(record)
            return True
        except queue.Full:
            logger.warning("Event sink queue full, dropping event %s", record.get("event"))
            return False

    def _run(self) -> None:
        while True:
            record = self._queue.get()
            try:
                if record is self._STOP:
                    return
                self.backend.append(record)
            except Exception as e:
                logger.warning("Could not append event to %s (non-fatal): %s", type(self.backend).__name__, e)
            finally:
                self._queue.task_done()

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued record was handed to the backend."""
        if self._thread is None:
            return True
        done = threading.Event()

        def _join():
            self._queue.join()
            done.set()

        threading.Thread(target=_join, daemon=True).start()
        return done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        self._closed = True
        if self._thread is not None:
            self._queue.put(self._STOP)
            self._thread.join(timeout)
            self._thread = None


def build_event_sink(service_key_json: str, spreadsheet_id: str) -> EventSink:
    if service_key_json and spreadsheet_id:
        return EventSink(SheetsBackend(service_key_json, spreadsheet_id))
    logger.info("SHEET_ID/GOOGLE_SERVICE_KEY not set, events go to the log only")
    return EventSink(LogBackend())

"""
FILE DESCRIPTION: Telemetry bridge between the crawl engine and any observers.
KEY FUNCTIONS/CLASSES: TelemetryBridge, JsonLinesSink, cap_decision_trace

FLOW: Components call emit() from any thread -> the event is normalized and placed on
its category channel (lifecycle / progress / url / decision) -> a single consumer
(background thread or an explicit flush()) drains the channels, coalesces progress,
batches URL events and delivers to subscribers in emission order -> delivered events
are kept in a bounded history replayed to late subscribers.
"""

import itertools
import json
import logging
import queue
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Any, Optional, List

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MAX_TRACE_BYTES = 8 * 1024
TRACE_PREVIEW_CHARS = 2048

LIFECYCLE_TYPES = {
    "crawl:started", "crawl:stopped", "crawl:paused", "crawl:resumed",
    "crawl:completed", "crawl:failed", "crawl:phase:changed", "crawl:goal:satisfied",
    "crawl:worker:scaled", "crawl:host:locked", "crawl:host:recovered",
    "crawl:fallback:headless", "crawl:reanalysis:triggered", "crawl:checkpoint:saved",
    "crawl:storage:degraded", "crawl:rate:limited",
}
PROGRESS_TYPES = {"crawl:progress", "crawl:budget:updated"}
URL_TYPES = {"crawl:url:visited", "crawl:url:error", "crawl:url:queued", "crawl:url:skipped"}
DECISION_TYPES = {"crawl:decision"}
URL_BATCH_TYPE = "crawl:url:batch"

EVENT_TYPES = LIFECYCLE_TYPES | PROGRESS_TYPES | URL_TYPES | DECISION_TYPES | {URL_BATCH_TYPE}

_DEFAULT_SEVERITY = {
    "crawl:failed": "error",
    "crawl:url:error": "warning",
    "crawl:host:locked": "warning",
    "crawl:storage:degraded": "warning",
    "crawl:rate:limited": "warning",
}

_CHANNEL_SIZES = {"lifecycle": 5000, "progress": 1000, "url": 20000, "decision": 2000}


def category_of(event_type: str) -> str:
    if event_type in PROGRESS_TYPES:
        return "progress"
    if event_type in URL_TYPES:
        return "url"
    if event_type in DECISION_TYPES:
        return "decision"
    return "lifecycle"


def cap_decision_trace(kind: str, message: str, details: Optional[Dict[str, Any]] = None,
                       max_bytes: int = MAX_TRACE_BYTES) -> Dict[str, Any]:
    """Returns a trace dict whose JSON form never exceeds `max_bytes`."""
    trace = {"kind": kind, "message": (message or "")[:1024], "details": details or {}}
    encoded = json.dumps(trace, default=str)
    if len(encoded.encode("utf-8")) <= max_bytes:
        return trace

    raw_details = json.dumps(details, default=str)
    preview_len = TRACE_PREVIEW_CHARS
    while True:
        trace["details"] = {
            "truncated": True,
            "original_bytes": len(raw_details.encode("utf-8")),
            "preview": raw_details[:preview_len],
        }
        if len(json.dumps(trace, default=str).encode("utf-8")) <= max_bytes or preview_len == 0:
            return trace
        preview_len //= 2


class TelemetryBridge:
    def __init__(self, job_id: Optional[str] = None, history_limit: int = 200, url_batch_size: int = 50,
                 batch_url_events: bool = True, store=None, persist_decision_traces: bool = False,
                 flush_interval: float = 0.2, source: str = "crawler"):
        self.job_id = job_id or uuid.uuid4().hex[:12]
        self.url_batch_size = max(1, url_batch_size)
        self.batch_url_events = batch_url_events
        self.store = store
        self.persist_decision_traces = persist_decision_traces
        self.flush_interval = flush_interval
        self.source = source

        self._channels = {name: queue.Queue(maxsize=size) for name, size in _CHANNEL_SIZES.items()}
        self._seq = itertools.count()
        self._history = deque(maxlen=max(1, history_limit))
        self._subscribers: List[Callable[[Dict[str, Any]], None]] = []
        self._sub_lock = threading.Lock()
        self._emit_lock = threading.Lock()
        self._flush_lock = threading.RLock()
        self._dropped = 0
        self._pending = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------------
    # PRODUCERS
    # -------------------------------
    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None, severity: Optional[str] = None,
             message: Optional[str] = None) -> Dict[str, Any]:
        if event_type not in EVENT_TYPES:
            logger.debug(f"[TELEMETRY] Non-canonical event type {event_type}")
        now = time.time()
        event = {
            "schemaVersion": SCHEMA_VERSION,
            "id": uuid.uuid4().hex,
            "type": event_type,
            "jobId": self.job_id,
            "timestamp": datetime.fromtimestamp(now, timezone.utc).isoformat(),
            "timestampMs": int(now * 1000),
            "severity": severity or _DEFAULT_SEVERITY.get(event_type, "info"),
            "message": message or "",
            "source": self.source,
            "data": dict(data or {}),
        }
        channel = category_of(event_type)
        # Sequence numbers enter the channels in the order they are handed out
        with self._emit_lock:
            try:
                self._channels[channel].put_nowait((next(self._seq), event))
            except queue.Full:
                self._dropped += 1
                dropped = self._dropped
            else:
                dropped = None
        if dropped is not None:
            if dropped % 100 == 1:
                logger.warning(f"[TELEMETRY] Channel {channel} full, dropped {dropped} events so far")
            return event
        self._pending.set()
        return event

    def progress(self, stats: Dict[str, Any]) -> Dict[str, Any]:
        return self.emit("crawl:progress", stats)

    def decision(self, kind: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Emits a capped decision trace; persists it only when enabled."""
        trace = cap_decision_trace(kind, message, details)
        if self.persist_decision_traces and self.store is not None:
            try:
                self.store.save_decision_trace(dict(trace, jobId=self.job_id))
            except Exception as e:
                logger.warning(f"[TELEMETRY] Could not persist decision trace '{kind}': {e}")
        return self.emit("crawl:decision", trace, message=trace["message"])

    # -------------------------------
    # CONSUMER
    # -------------------------------
    def flush(self) -> int:
        """Drains every channel and delivers to subscribers. Returns number of delivered events."""
        with self._flush_lock:
            self._pending.clear()
            drained = []
            with self._emit_lock:
                for channel in self._channels.values():
                    while True:
                        try:
                            drained.append(channel.get_nowait())
                        except queue.Empty:
                            break
            if not drained:
                return 0
            drained.sort(key=lambda item: item[0])
            delivered = self._shape(drained)
            for event in delivered:
                self._history.append(event)
                self._deliver(event)
            return len(delivered)

    def _shape(self, drained):
        # Progress: keep only the newest event per job
        last_progress = {}
        for seq, event in drained:
            if event["type"] == "crawl:progress":
                last_progress[event["jobId"]] = seq

        out = []
        url_batch = []
        for seq, event in drained:
            etype = event["type"]
            if etype == "crawl:progress" and last_progress.get(event["jobId"]) != seq:
                continue
            if etype in URL_TYPES and self.batch_url_events:
                if not url_batch:
                    out.append((seq, None))  # placeholder keeps the batch in order
                url_batch.append(event)
                if len(url_batch) >= self.url_batch_size:
                    self._close_batch(out, url_batch)
                    url_batch = []
                continue
            out.append((seq, event))
        if url_batch:
            self._close_batch(out, url_batch)
        return [event for _, event in out]

    def _close_batch(self, out, events):
        for i in range(len(out) - 1, -1, -1):
            if out[i][1] is None:
                first = events[0]
                batch = {
                    "schemaVersion": SCHEMA_VERSION,
                    "id": uuid.uuid4().hex,
                    "type": URL_BATCH_TYPE,
                    "jobId": first["jobId"],
                    "timestamp": first["timestamp"],
                    "timestampMs": first["timestampMs"],
                    "severity": "warning" if any(e["severity"] != "info" for e in events) else "info",
                    "message": "",
                    "source": self.source,
                    "data": {"count": len(events), "events": list(events)},
                }
                out[i] = (out[i][0], batch)
                return

    def _deliver(self, event):
        with self._sub_lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(event)
            except Exception as e:
                logger.warning(f"[TELEMETRY] Subscriber {getattr(fn, '__name__', fn)} failed on {event['type']}: {e}")

    def subscribe(self, fn: Callable[[Dict[str, Any]], None], replay_history: bool = True) -> Callable[[], None]:
        """Registers a subscriber; returns a function that unsubscribes it."""
        with self._flush_lock:
            if replay_history:
                for event in list(self._history):
                    try:
                        fn(event)
                    except Exception as e:
                        logger.warning(f"[TELEMETRY] Subscriber failed during history replay: {e}")
            with self._sub_lock:
                self._subscribers.append(fn)

        def unsubscribe():
            with self._sub_lock:
                if fn in self._subscribers:
                    self._subscribers.remove(fn)
        return unsubscribe

    def history(self) -> List[Dict[str, Any]]:
        with self._flush_lock:
            return list(self._history)

    @property
    def dropped(self) -> int:
        return self._dropped

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="TelemetryBridge")
        self._thread.start()

    def _run(self):
        while not self._stop.is_set():
            self._pending.wait(self.flush_interval)
            # Let bursts accumulate so progress coalesces and URL events batch
            self._stop.wait(self.flush_interval)
            self.flush()
        self.flush()

    def stop(self):
        self._stop.set()
        self._pending.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self.flush()


class JsonLinesSink:
    """Subscriber that appends each delivered event to a JSON-lines file."""

    def __init__(self, path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def __call__(self, event: Dict[str, Any]):
        line = json.dumps(event, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")

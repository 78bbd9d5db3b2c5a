"""Stream diagnostics: structured JSONL trace of runs, attempts and events."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from mu_chat.config import ProviderSettings
from mu_chat.types import StreamEnvelope


class StreamTrace:
    """Append run, attempt and event records to a JSONL file.

    File: ~/.mu_chat/traces/trace_YYYYMMDD_HHMMSS.jsonl by default.
    Each line: {"_seq": 0, "_elapsed_ms": 123.4, "_ts": "...", "kind": ...}
    API keys are never written; attempts record the key slot only.
    """

    def __init__(self, path: Path | str | None = None):
        if path is None:
            traces_dir = Path.home() / ".mu_chat" / "traces"
            traces_dir.mkdir(parents=True, exist_ok=True)
            ts = time.strftime("%Y%m%d_%H%M%S")
            path = traces_dir / f"trace_{ts}.jsonl"
        else:
            path = Path(path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)

        self.path = path
        self._file = open(path, "a", encoding="utf-8")
        self._seq = 0
        self._start = time.monotonic()

    def _write(self, record: dict[str, Any]) -> None:
        if self._file.closed:
            return
        record["_seq"] = self._seq
        record["_elapsed_ms"] = round((time.monotonic() - self._start) * 1000, 1)
        record["_ts"] = time.strftime("%Y-%m-%dT%H:%M:%S")
        self._seq += 1
        self._file.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        self._file.flush()

    def log_run_start(self, run_id: str, settings: ProviderSettings) -> None:
        """Record which provider a run was dispatched to."""
        self._write({
            "kind": "run_start",
            "run_id": run_id,
            "provider_kind": settings.provider_kind.value,
            "base_url": settings.normalized_base_url,
            "model": settings.model,
            "key_count": len(settings.api_keys),
            "timeout_ms": settings.request_timeout_ms,
            "retry_count": settings.retry_count,
        })

    def log_attempt(
        self,
        run_id: str,
        attempt: int,
        key_slot: int,
        delivered: bool,
        failure: str | None = None,
    ) -> None:
        """Record the outcome of one attempt."""
        record: dict[str, Any] = {
            "kind": "attempt",
            "run_id": run_id,
            "attempt": attempt,
            "key_slot": key_slot,
            "has_delta": delivered,
        }
        if failure:
            record["failure"] = failure
        self._write(record)

    def log_event(self, envelope: StreamEnvelope) -> None:
        record: dict[str, Any] = {"kind": "event", "run_id": envelope.run_id, "seq": envelope.seq}
        event = envelope.event.to_dict()
        for key in ("delta", "input", "output"):
            if key in event:
                event[key] = event[key][:500]
        record.update(event)
        self._write(record)

    def close(self) -> None:
        """Flush and close the trace file."""
        if not self._file.closed:
            self._file.flush()
            self._file.close()

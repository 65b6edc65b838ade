"""JSONL outbox for post-submit sync snapshots."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock


_WRITE_LOCK = Lock()
_LOGGER = logging.getLogger("examengine.sync")


def _outbox_root() -> Path:
    raw = os.getenv("SYNC_OUTBOX_DIR", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return Path(__file__).resolve().parents[2] / "data" / "sync_outbox"


def _events_path() -> Path:
    root = _outbox_root()
    root.mkdir(parents=True, exist_ok=True)
    return root / "sync_events.jsonl"


def _stats_path() -> Path:
    root = _outbox_root()
    root.mkdir(parents=True, exist_ok=True)
    return root / "sync_stats.json"


def _empty_stats() -> dict:
    return {"total_events": 0, "by_kind": {}, "last_event_at": ""}


def get_sync_stats() -> dict:
    """Return the current outbox aggregate snapshot."""
    stats_file = _stats_path()
    if not stats_file.exists():
        return _empty_stats()
    try:
        return json.loads(stats_file.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return _empty_stats()


def record_sync_event(event: dict) -> dict:
    """Append `event` to the outbox and update the aggregate stats file.

    Returns the stored payload (with a timestamp filled in).
    """
    payload = dict(event)
    payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    with _WRITE_LOCK:
        with _events_path().open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(payload, ensure_ascii=True) + "\n")
        _update_stats(payload)
    _LOGGER.info("sync_event %s", json.dumps({"kind": payload.get("kind"), "timestamp": payload["timestamp"]}, ensure_ascii=True))
    return payload


def read_sync_events() -> list:
    """Return all outbox events in write order."""
    path = _events_path()
    if not path.exists():
        return []
    with _WRITE_LOCK:
        lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def _update_stats(event: dict) -> None:
    stats = get_sync_stats()
    stats.setdefault("total_events", 0)
    stats.setdefault("by_kind", {})
    kind = str(event.get("kind", "unknown"))
    stats["total_events"] += 1
    stats["by_kind"][kind] = stats["by_kind"].get(kind, 0) + 1
    stats["last_event_at"] = event["timestamp"]
    _stats_path().write_text(json.dumps(stats, ensure_ascii=True, indent=2), encoding="utf-8")

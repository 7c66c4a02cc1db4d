"""Bounded event buffers and the cursor poll protocol.

Every run owns an EventLog: events get dense, strictly increasing `seq`
numbers; when the buffer passes its cap, the oldest events are dropped in one
slice down to the trim target and counted in `dropped`. A consumer whose
cursor points below the first retained seq gets an explicit gap instead of
silently resuming.

Event shapes (the `source` discriminator):
  codex   — {"event": <decoded stdout object>}
  stderr  — {"text": ...}
  raw     — {"text": ..., "error": {"message": ...}}  (unparsable stdout)
  system  — {"kind": spawn|status|warning|error|gap, ...}
Text payloads over the per-event cap carry truncated/originalLength.
"""

from typing import Any

from .types import now_iso

TEXT_SOURCES = ("stderr", "raw")


def trim_target(cap: int) -> int:
    """How many events survive a trim: cap minus 20%, at least one."""
    return max(1, cap - cap // 5)


def clip_text(payload: dict[str, Any], limit: int) -> dict[str, Any]:
    """Cap the text of stderr/raw payloads, marking clipped ones."""
    if payload.get("source") not in TEXT_SOURCES or "text" not in payload:
        return payload
    text = str(payload.get("text") or "")
    if len(text) > limit:
        payload["text"] = text[:limit]
        payload["truncated"] = True
        payload["originalLength"] = len(text)
    else:
        payload["text"] = text
    return payload


class EventLog:
    """Append-only, bounded, sequence-numbered event buffer."""

    def __init__(self, cap: int, text_cap: int, next_seq: int = 0, dropped: int = 0):
        self.cap = max(1, cap)
        self.text_cap = max(1, text_cap)
        self.events: list[dict[str, Any]] = []
        self.next_seq = next_seq
        self.dropped = dropped

    def __len__(self) -> int:
        return len(self.events)

    @property
    def earliest_seq(self) -> int:
        """First retained seq, or the emission frontier when empty."""
        return self.events[0]["seq"] if self.events else self.next_seq

    def append(self, payload: dict[str, Any]) -> dict[str, Any]:
        evt = {"seq": self.next_seq, "ts": now_iso(), **clip_text(dict(payload), self.text_cap)}
        self.next_seq += 1
        self.events.append(evt)
        if len(self.events) > self.cap:
            drop = len(self.events) - trim_target(self.cap)
            del self.events[:drop]
            self.dropped += drop
        return evt

    def poll(self, cursor: int, terminal: bool) -> dict[str, Any]:
        """Events from cursor on; read-only.

        Returns {events, nextCursor, done, droppedEvents} plus
        gap={from, to} when cursor is older than what is retained.
        """
        cursor = max(0, int(cursor))
        earliest = self.earliest_seq
        if cursor < earliest:
            return {
                "events": [],
                "nextCursor": earliest,
                "done": False,
                "gap": {"from": cursor, "to": earliest},
                "droppedEvents": self.dropped,
            }
        start = cursor - earliest
        events = [dict(e) for e in self.events[start:]]
        next_cursor = max(cursor, self.next_seq)
        return {
            "events": events,
            "nextCursor": next_cursor,
            "done": terminal and next_cursor >= self.next_seq,
            "droppedEvents": self.dropped,
        }


class WindowLog:
    """Per-window history of events across runs, bounded the same way."""

    def __init__(self, cap: int, events: list[dict[str, Any]] | None = None, updated_at: str = ""):
        self.cap = max(1, cap)
        self.events: list[dict[str, Any]] = list(events or [])
        self.updated_at = updated_at
        self.dropped = 0
        self._trim()

    def append(self, evt: dict[str, Any]) -> None:
        self.events.append(evt)
        self.updated_at = now_iso()
        self._trim()

    def _trim(self) -> None:
        if len(self.events) > self.cap:
            drop = len(self.events) - trim_target(self.cap)
            del self.events[:drop]
            self.dropped += drop

    def page(self, limit: int | None = None, offset: int = 0) -> list[dict[str, Any]]:
        """Slice counted from the newest end: offset skips the newest events."""
        total = len(self.events)
        end = max(0, total - max(0, offset))
        start = 0 if not limit or limit <= 0 else max(0, end - limit)
        return self.events[start:end]

    def clear(self) -> None:
        self.events.clear()
        self.updated_at = now_iso()

    def to_dict(self) -> dict[str, Any]:
        return {"events": list(self.events), "lines": [], "updatedAt": self.updated_at}

    @classmethod
    def from_dict(cls, data: dict, cap: int) -> "WindowLog":
        """Restore; legacy preformatted `lines` come back as {"line": ...} entries."""
        events = [e for e in data.get("events") or [] if isinstance(e, dict)]
        lines = [{"line": str(line)} for line in data.get("lines") or [] if line is not None]
        updated_at = data.get("updatedAt") if isinstance(data.get("updatedAt"), str) else ""
        return cls(cap, lines + events, updated_at)

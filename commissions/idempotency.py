"""Per-document record of the upstream events that already took effect.

The check and the append must both happen inside the transaction that
applies the event's effect, otherwise a crash between them either loses
the effect or applies it twice on redelivery.
"""

from typing import Optional

PROCESSED_EVENT_IDS = "processed_event_ids"


def is_processed(document: Optional[dict], event_id: str) -> bool:
    if not document:
        return False
    return event_id in (document.get(PROCESSED_EVENT_IDS) or [])


def record_event(document: Optional[dict], event_id: str, limit: Optional[int] = None) -> list[str]:
    """Return the document's event ids with event_id appended.

    When limit is set only the most recent ids are kept.
    """
    event_ids = list((document or {}).get(PROCESSED_EVENT_IDS) or [])
    if event_id not in event_ids:
        event_ids.append(event_id)
    if limit is not None and len(event_ids) > limit:
        event_ids = event_ids[-limit:]
    return event_ids

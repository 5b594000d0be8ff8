from datetime import datetime, timezone
from typing import Optional

from clients.store import DocumentExistsError, DocumentStore

from models.entities.documents.processed_events import ProcessedEvent, ProcessedEventData


async def processed_event_claim(
    store: DocumentStore, event_id: str, event_type: str, transaction_id: Optional[str] = None
) -> bool:
    """Record *event_id* as handled. False if it was already claimed."""
    data = ProcessedEventData(
        event_type=event_type,
        transaction_id=transaction_id,
        received_at=datetime.now(timezone.utc),
    )
    try:
        await ProcessedEvent.create(store, data, key=event_id)
    except DocumentExistsError:
        return False
    return True


async def processed_event_release(store: DocumentStore, event_id: str) -> None:
    """Forget a claim so a redelivery of the event is processed again."""
    await ProcessedEvent.delete(store, event_id)

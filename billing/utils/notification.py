# donation_billing/billing/utils/notification.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from billing.utils.domain import EventType

logger = logging.getLogger(__name__)

# события, о которых стоит писать пользователю (доставка — вне движка); в логе — WARNING
USER_FACING = frozenset({
    EventType.PAST_DUE,
    EventType.CANCELED,
    EventType.RECOVERED,
    EventType.PAYMENT_METHOD_DISABLED,
    EventType.PAYMENT_AFTER_CANCELLATION,
})


class OutboxNotifier:
    """
    Нотификатор-outbox: событие пишется в billing_events ровно один раз на dedupe_key.
    Рассылкой писем/SMS занимается внешний сервис, читающий outbox.
    """

    def __init__(self, repo):
        self.repo = repo

    def emit(
        self,
        account_id: int,
        event_type: EventType,
        *,
        dedupe_key: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        body = json.dumps(payload or {}, ensure_ascii=False, default=str)
        created = self.repo.record_event(
            account_id=account_id,
            event_type=event_type.value,
            dedupe_key=dedupe_key,
            payload_json=body,
        )
        if not created:
            logger.debug("Event %s for account %s already emitted (%s)", event_type.value, account_id, dedupe_key)
            return False
        level = logging.WARNING if event_type in USER_FACING else logging.INFO
        logger.log(level, "Billing event %s for account %s: %s", event_type.value, account_id, body)
        return True

    def emit_many(
        self,
        account_id: int,
        events,
        *,
        key_prefix: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> List[EventType]:
        """Пачка событий одного перехода; ключ = {key_prefix}:{event}. Возвращает реально новые."""
        emitted = []
        for event_type in events:
            if self.emit(account_id, event_type, dedupe_key=f"{key_prefix}:{event_type.value}", payload=payload):
                emitted.append(event_type)
        return emitted

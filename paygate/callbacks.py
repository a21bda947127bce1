from __future__ import annotations

import logging
from typing import Mapping, Optional, Union

from paygate.errors import canonical_status, kind_message, status_message
from paygate.providers.base import ErrorKind, PaymentAdapter, PaymentStatus, Provider
from paygate.schemas import CallbackEvent
from paygate.services.metrics import increment_callback_event
from paygate.services.redaction import redact_text

logger = logging.getLogger("paygate.callbacks")


class CallbackNormalizer:
    """
    Turns a provider webhook body into a CallbackEvent.

    Only bodies that already passed the transport's signature/auth checks
    should reach this class. It never raises: anything it cannot read comes
    back as a failed event with reason "malformed_callback".
    """

    def __init__(self, adapters: Mapping[Provider, PaymentAdapter]):
        self.adapters = dict(adapters)

    def normalize(
        self,
        provider: Union[Provider, str],
        raw_body: bytes | str | None,
        query: Mapping[str, str] | None = None,
    ) -> CallbackEvent:
        resolved = provider if isinstance(provider, Provider) else Provider.parse(provider)
        adapter = self.adapters.get(resolved) if resolved else None
        if adapter is None:
            logger.warning("callback for unsupported provider=%s", provider)
            return self._rejected(resolved, ErrorKind.UNSUPPORTED_PROVIDER)

        body = raw_body.encode() if isinstance(raw_body, str) else (raw_body or b"")
        if not body.strip():
            logger.warning("empty callback body provider=%s", resolved.value)
            return self._rejected(resolved, ErrorKind.MALFORMED_CALLBACK)

        try:
            event = self._event(resolved, adapter, body, query)
        except (ValueError, TypeError, RecursionError) as exc:
            logger.warning(
                "unreadable callback provider=%s error=%s",
                resolved.value,
                type(exc).__name__,
            )
            return self._rejected(resolved, ErrorKind.MALFORMED_CALLBACK)
        if event is None:
            return self._rejected(resolved, ErrorKind.MALFORMED_CALLBACK)

        increment_callback_event(resolved.value, event.status.value)
        logger.info(
            "callback normalized provider=%s status=%s native=%s reference=%s external_id=%s",
            resolved.value,
            event.status.value,
            event.native_status,
            event.provider_reference,
            event.external_id,
        )
        return event

    @staticmethod
    def _event(
        provider: Provider,
        adapter: PaymentAdapter,
        body: bytes,
        query: Mapping[str, str] | None,
    ) -> Optional[CallbackEvent]:
        result = adapter.parse_callback(body, query)
        if not result.ok:
            logger.warning(
                "malformed callback provider=%s detail=%s body=%s",
                provider.value,
                result.error,
                redact_text(body[:300].decode("utf-8", errors="replace")),
            )
            return None

        status = canonical_status(provider, result.native_status)
        success = status == PaymentStatus.SUCCESS
        return CallbackEvent(
            success=success,
            status=status,
            provider=provider,
            external_id=result.external_id,
            provider_reference=result.reference_id,
            provider_transaction_id=result.transaction_id,
            amount=result.amount,
            currency=result.currency,
            phone_number=result.phone_number,
            native_status=result.native_status,
            reason=None if success else (result.reason or status.value),
            message=status_message(provider, result.native_status),
        )

    @staticmethod
    def _rejected(provider: Optional[Provider], kind: ErrorKind) -> CallbackEvent:
        increment_callback_event(provider.value if provider else "unknown", kind.value)
        return CallbackEvent(
            success=False,
            status=PaymentStatus.FAILED,
            provider=provider,
            reason=kind.value,
            message=kind_message(kind),
        )

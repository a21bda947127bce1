# paygate/routes/webhooks.py
from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, Request

from paygate.callbacks import CallbackNormalizer
from paygate.orchestrator import get_gateway
from paygate.schemas import CallbackEvent

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])
logger = logging.getLogger("paygate.callbacks")


@lru_cache
def get_callback_normalizer() -> CallbackNormalizer:
    return CallbackNormalizer(get_gateway().adapters)


# MTN delivers callbacks with PUT, Daraja with POST
@router.api_route("/{provider}", methods=["POST", "PUT"], response_model=CallbackEvent)
async def provider_webhook(
    provider: str,
    request: Request,
    normalizer: CallbackNormalizer = Depends(get_callback_normalizer),
):
    raw = await request.body()
    event = normalizer.normalize(provider, raw, dict(request.query_params))
    # always 200: a provider retrying an unreadable body will not fix it
    return event

"""
Push notification messages to the outbound queue. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
Delivery to devices / inboxes happens downstream of this queue.
"""
import json

from rxdispatch.config import settings
from rxdispatch.redis_client import get_redis, queue_length
from rxdispatch.sqs_client import get_queue_depth, send_message


async def push_to_queue(body: dict) -> None:
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(settings.notification_queue_key, json.dumps(body))


async def queue_depth() -> int:
    if settings.sqs_queue_url:
        return await get_queue_depth()
    return await queue_length(settings.notification_queue_key)

from __future__ import annotations

import asyncio
import datetime
import json
import logging
from typing import TYPE_CHECKING, Any, AsyncGenerator, Dict, Optional, Tuple, Union

from pydantic import BaseModel

from .errors import NotFoundError
from .status import is_terminal

if TYPE_CHECKING:
    from .service import MenuService

logger = logging.getLogger(__name__)


def sse_event(event: str, data: Union[BaseModel, Dict[str, Any]], event_id: Optional[str] = None) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    payload = ""
    if event_id is not None:
        payload += f"id: {event_id}\n"
    payload += f"event: {event}\n"
    payload += f"data: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"
    return payload


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


async def scan_event_stream(
    service: MenuService,
    scan_id: str,
    *,
    poll_interval: float,
    max_duration: float,
) -> AsyncGenerator[str, None]:
    """Poll the store and stream scan/dish changes until the scan is terminal.

    Dish updates carry display_order since they arrive in no particular order.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    seq = 0
    last_scan: Optional[Dict[str, Any]] = None
    dish_states: Dict[str, Tuple[Any, ...]] = {}

    while True:
        try:
            view = await service.get_scan_with_dishes(scan_id)
        except NotFoundError:
            seq += 1
            yield sse_event("done", {"status": "deleted", "scan_id": scan_id}, event_id=str(seq))
            return

        scan_payload = view.scan.model_dump(mode="json")
        if scan_payload != last_scan:
            last_scan = scan_payload
            seq += 1
            yield sse_event("scan", scan_payload, event_id=str(seq))

        for dish in view.dishes:
            state = (dish.image_status, dish.image_url, dish.image_error)
            if dish_states.get(dish.id) == state:
                continue
            dish_states[dish.id] = state
            seq += 1
            yield sse_event(
                "dish_update",
                {
                    "dish_id": dish.id,
                    "display_order": dish.display_order,
                    "name": dish.name,
                    "image_status": dish.image_status.value,
                    "image_url": dish.image_url,
                    "image_error": dish.image_error,
                },
                event_id=str(seq),
            )

        if is_terminal(view.scan.status):
            seq += 1
            yield sse_event(
                "done",
                {
                    "status": view.scan.status.value,
                    "scan_id": scan_id,
                    "summary": {
                        "elapsed_ms": int((loop.time() - started) * 1000),
                        "dishes_count": len(view.dishes),
                        "images_generated": view.scan.images_generated,
                        "images_failed": view.scan.images_failed,
                        "actual_cost_usd": view.scan.actual_cost_usd,
                    },
                },
                event_id=str(seq),
            )
            return

        if loop.time() - started >= max_duration:
            yield sse_event("timeout", {"message": "Connection timeout, please reconnect"})
            return

        await asyncio.sleep(poll_interval)
        yield sse_event("heartbeat", {"ts": _now_iso()})

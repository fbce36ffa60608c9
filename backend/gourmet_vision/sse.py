import json
from typing import Any, Optional

from pydantic import BaseModel


def sse_event(event: str, data: Any, event_id: Optional[str] = None) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    payload = ""
    if event_id is not None:
        payload += f"id: {event_id}\n"
    payload += f"event: {event}\n"
    payload += f"data: {json.dumps(data, ensure_ascii=False)}\n\n"
    return payload


import logging
from typing import Any, Dict, Optional

import aiohttp
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class HttpCallPayload(BaseModel):
    url: str = Field(..., description="The URL to make the HTTP request to")
    method: str = Field(default="POST", description="The HTTP method to use (e.g. GET, POST, PUT, DELETE)")
    headers: Dict[str, str] = Field(default={}, description="Optional headers to include in the request")
    body: Dict[str, Any] = Field(default={}, description="Optional body payload for the request")
    params: Dict[str, str] = Field(default={}, description="Optional query parameters for the request")
    timeout_seconds: float = Field(default=30.0, gt=0)


class HttpCallAction:
    """
    Built-in action calling an HTTP endpoint, e.g. a webhook of another service.

    The schedule's ``data`` is validated as an ``HttpCallPayload``. The entity and
    actor IDs are added to the JSON body. Non-2xx responses raise, so the queue
    retries them like any other failed run.
    """
    name = "http_call"

    async def __call__(self, data: Dict[str, Any], entity_id: Optional[str],
                       actor_id: Optional[str]) -> Dict[str, Any]:
        payload = HttpCallPayload.model_validate(data)
        body = dict(payload.body)
        if entity_id is not None:
            body.setdefault("entityId", entity_id)
        if actor_id is not None:
            body.setdefault("actorId", actor_id)

        timeout = aiohttp.ClientTimeout(total=payload.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(
                method=payload.method,
                url=payload.url,
                headers=payload.headers,
                params=payload.params,
                json=body
            ) as response:
                text = await response.text()
                logger.info("%s %s answered %d", payload.method, payload.url, response.status)
                response.raise_for_status()
                return {
                    "status": response.status,
                    "headers": dict(response.headers),
                    "body": text
                }

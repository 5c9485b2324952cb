"""
Request body size limit.

A declared Content-Length over the limit is refused before the route runs.
Bodies without one (chunked uploads) are counted as they are received.
"""

import logging

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

TOO_LARGE = "Payload too large"


class BodySizeLimitMiddleware:

    def __init__(self, app: ASGIApp, max_body_size: int):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        length = Headers(scope=scope).get("content-length")
        if length and length.isdigit() and int(length) > self.max_body_size:
            logger.warning("Rejected %s %s: body of %s bytes", scope["method"], scope["path"], length)
            response = JSONResponse(status_code=413, content={"error": TOO_LARGE})
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_size:
                    logger.warning(
                        "Rejected %s %s: streamed body over %d bytes",
                        scope["method"], scope["path"], self.max_body_size,
                    )
                    # Raised from inside body parsing; FastAPI passes HTTPException through.
                    raise HTTPException(status_code=413, detail=TOO_LARGE)
            return message

        await self.app(scope, limited_receive, send)

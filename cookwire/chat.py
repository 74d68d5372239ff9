"""
Mock AI chat endpoint.

The editor's AI panel talks to ``/api/chat`` using the AI SDK data stream
protocol. Until a real model is wired in, the reply is a fixed notice streamed
one character at a time so the client's streaming UI can be exercised.
"""

import asyncio
import json
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import StreamingResponse

from .security.rate_limit import rate_limit

router = APIRouter(prefix="/chat", tags=["chat"])

MOCK_REPLY = (
    "This is a simulated response from CookWire AI. "
    "Real AI integration requires an API Key."
)
DEFAULT_CHAR_DELAY = 0.03


def _text_part(text: str) -> str:
    return f"0:{json.dumps(text)}\n"


def _finish_part(completion_tokens: int) -> str:
    payload = {
        "finishReason": "stop",
        "usage": {"promptTokens": 0, "completionTokens": completion_tokens},
    }
    return f"d:{json.dumps(payload, separators=(',', ':'))}\n"


async def stream_mock_reply(text: str = MOCK_REPLY, delay: float = DEFAULT_CHAR_DELAY) -> AsyncIterator[str]:
    """Yield ``text`` as data-stream text parts, then a finish part."""
    for char in text:
        yield _text_part(char)
        if delay > 0:
            await asyncio.sleep(delay)
    yield _finish_part(len(text))


@router.post("", dependencies=[Depends(rate_limit)])
async def chat(request: Request, response: Response):
    """Stream the mock assistant reply. The request body is not inspected."""
    delay = getattr(request.app.state, "chat_char_delay", DEFAULT_CHAR_DELAY)
    # Returned responses skip the injected one, so carry the rate limit headers over
    headers = {name: value for name, value in response.headers.items() if name.startswith("ratelimit-")}
    headers.update({"x-vercel-ai-data-stream": "v1", "Cache-Control": "no-cache"})
    return StreamingResponse(
        stream_mock_reply(delay=delay),
        media_type="text/plain; charset=utf-8",
        headers=headers,
    )

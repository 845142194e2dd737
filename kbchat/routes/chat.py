from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from kbchat.routes._deps import NO_STORE, auth_from_request, quota_headers
from kbchat.schemas import ChatRequest

router = APIRouter(prefix="/api", tags=["chat"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "X-Accel-Buffering": "no",
}


@router.post("/chat")
async def create_chat(payload: ChatRequest, request: Request):
    auth = auth_from_request(request)
    start = await request.app.state.orchestrator.create_generation(auth=auth, request=payload)
    if start.relay is not None:
        return StreamingResponse(
            start.relay.iter_bytes(),
            media_type="text/event-stream",
            headers={**STREAM_HEADERS, **quota_headers(start.quota)},
        )
    return JSONResponse(
        status_code=200,
        content=start.body(),
        headers={**NO_STORE, **quota_headers(start.quota)},
    )


@router.get("/chat/status")
async def chat_status(
    request: Request,
    generation_id: str | None = Query(default=None),
    conversation_id: str | None = Query(default=None),
):
    auth = auth_from_request(request)
    data = await request.app.state.reconciler.resolve(
        user_id=auth.user_id,
        generation_id=generation_id,
        conversation_id=conversation_id,
    )
    return JSONResponse(status_code=200, content=data, headers=NO_STORE)

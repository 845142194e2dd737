from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from kbchat.citations import map_stored_message
from kbchat.errors import ConversationNotFound
from kbchat.routes._deps import NO_STORE, auth_from_request, quota_headers

router = APIRouter(prefix="/api", tags=["conversations"])


@router.get("/conversations/{conversation_id}/messages")
def list_conversation_messages(conversation_id: str, request: Request):
    auth = auth_from_request(request)
    chat_store = request.app.state.chat_store
    conversation = chat_store.get_owned_conversation(user_id=auth.user_id, conversation_id=conversation_id)
    if conversation is None:
        raise ConversationNotFound()
    rows = chat_store.list_messages(user_id=auth.user_id, conversation_id=str(conversation["id"]))
    return JSONResponse(
        status_code=200,
        content={"messages": [map_stored_message(row) for row in rows]},
        headers=NO_STORE,
    )


@router.get("/quota")
def get_quota(request: Request):
    auth = auth_from_request(request)
    quota = request.app.state.chat_store.peek_quota(user_id=auth.user_id)
    return JSONResponse(
        status_code=200,
        content={"quota": quota.as_dict()},
        headers={**NO_STORE, **quota_headers(quota)},
    )

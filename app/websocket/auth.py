from __future__ import annotations

from fastapi import HTTPException, WebSocket

from app.services.auth import extract_bearer_token, user_id_from_token


async def authenticate_websocket(websocket: WebSocket) -> dict | None:
    """
    Authenticate WebSocket connection.

    Extracts JWT from query param (?token=) or the Authorization header.
    Returns {user_id} if valid; otherwise closes with 4001 and returns None.
    """
    token = websocket.query_params.get("token")

    if not token:
        token = extract_bearer_token(websocket.headers.get("authorization"))

    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return None

    try:
        return {"user_id": user_id_from_token(token)}
    except HTTPException:
        await websocket.close(code=4001, reason="Invalid token")
        return None

"""WebSocket endpoint for live audit progress."""

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from siteaudit.api.v1.deps import get_audit_store
from siteaudit.services.store import AuditStore
from siteaudit.services.websocket import websocket_manager

router = APIRouter()


@router.websocket("/audit/{audit_id}/ws")
async def audit_websocket(
    websocket: WebSocket,
    audit_id: str,
    store: AuditStore = Depends(get_audit_store),  # noqa: B008
):
    """Stream progress events for an audit until the client disconnects."""
    audit = store.get_audit(audit_id)
    if audit is None:
        await websocket.close(code=1008)  # Policy violation
        return

    await websocket.accept()
    await websocket_manager.connect(audit_id, websocket)

    try:
        # Current state first so late subscribers are not left waiting
        await websocket.send_json(
            {
                "status": audit.status.value,
                "pages_crawled": audit.pages_crawled,
                "urls_discovered": audit.urls_discovered,
                "batch": audit.current_batch,
                "timestamp": audit.updated_at.isoformat(),
            }
        )
        while True:
            # Incoming messages are ignored; receiving detects disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        websocket_manager.disconnect(audit_id, websocket)

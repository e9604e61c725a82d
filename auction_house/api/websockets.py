"""
WebSocket API Route

Handles:
- Real-time auction updates (NEW_BID, AUCTION_CLOSED) via WebSocket
"""
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from auction_house.core.dependencies import get_notifier
from auction_house.infrastructure.pubsub import AuctionNotifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websockets"])


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================
@router.websocket("/ws/auctions/{auction_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    auction_id: str,
    notifier: AuctionNotifier = Depends(get_notifier),
):
    """
    WebSocket endpoint for real-time auction updates

    Any text from the client is answered with PONG.
    """
    await notifier.add_connection(websocket, auction_id)

    try:
        await notifier.send_personal_message(websocket, {
            "type": "CONNECTED",
            "auction_id": auction_id,
            "message": f"Connected to auction {auction_id}",
            "viewers": notifier.connections.get_viewer_count(auction_id),
        })

        while True:
            await websocket.receive_text()
            await notifier.send_personal_message(websocket, {
                "type": "PONG",
                "message": "Connection alive",
            })

    except WebSocketDisconnect:
        await notifier.remove_connection(websocket, auction_id)

    except Exception as e:
        logger.error(f"❌ WebSocket error on auction {auction_id}: {e}")
        await notifier.remove_connection(websocket, auction_id)

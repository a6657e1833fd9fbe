import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket
from starlette.requests import HTTPConnection

from agrichat.services.gateway import MessageGateway
from agrichat.utils.channel import WebSocketChannel


logger = logging.getLogger("agrichat.routers.chat")

router = APIRouter(tags=["chat"])


def get_gateway(connection: HTTPConnection) -> MessageGateway:
    return connection.app.state.gateway


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, token: Optional[str] = None, gateway: MessageGateway = Depends(get_gateway)):
    # token may come as ?token=... or as the first "authenticate" frame
    await websocket.accept()
    channel = WebSocketChannel(websocket)
    logger.info("Channel %s opened", channel.channel_id)
    await gateway.serve(channel, token=token)

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from dishka.integrations.fastapi import inject
from dishka import FromComponent
from typing import Annotated
from indexer.broadcast import BroadcastServer
from indexer.schemas import ClientsResponse, HealthResponse, SyncStatusResponse
from indexer.usecases import GetHealthStatusUseCase, GetSyncStatusUseCase

router = APIRouter(
    prefix="/api/status",
    tags=["Status"]
)

ws_router = APIRouter(tags=["WebSocket"])


@router.get("/health", response_model=HealthResponse)
@inject
async def get_health(
    use_case: Annotated[
        GetHealthStatusUseCase, FromComponent("indexer")
    ]
) -> HealthResponse:
    """
    Get indexer health: running flag, ledger height and sync states.

    Parameters
    ----------
    use_case : GetHealthStatusUseCase
        Use case for getting the health status

    Returns
    -------
    HealthResponse
        Health snapshot
    """
    return await use_case()


@router.get("/sync", response_model=SyncStatusResponse)
@inject
async def get_sync_status(
    use_case: Annotated[
        GetSyncStatusUseCase, FromComponent("indexer")
    ]
) -> SyncStatusResponse:
    """
    Get sync status of every configured contract.

    Parameters
    ----------
    use_case : GetSyncStatusUseCase
        Use case for getting the sync status

    Returns
    -------
    SyncStatusResponse
        Per-contract resume point and lag
    """
    return await use_case()


@router.get("/clients", response_model=ClientsResponse)
@inject
async def get_clients(
    broadcast_server: Annotated[
        BroadcastServer, FromComponent("indexer")
    ]
) -> ClientsResponse:
    """
    Get the number of connected WebSocket clients.
    """
    return ClientsResponse(connected_clients=broadcast_server.connected_clients_count)


@ws_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Live notification stream.

    The broadcast server is attached to ``app.state`` by the application
    lifespan. Text and binary frames are both accepted as control messages.
    """
    broadcast_server: BroadcastServer = websocket.app.state.broadcast_server

    await websocket.accept()
    client = await broadcast_server.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            data = message.get("text")
            if data is None:
                data = message.get("bytes")
            if data is not None:
                await broadcast_server.handle_message(client.id, data)
    except WebSocketDisconnect:
        pass
    finally:
        broadcast_server.disconnect(client.id)

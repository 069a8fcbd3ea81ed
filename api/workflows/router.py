from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from api.workflows import models as api_models
from api.workflows import services
from api.workflows.services import SessionManager, engine_errors, get_session_manager


router = APIRouter(prefix="/v1", tags=["workflows"])


def _require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_user_id


@router.get("/builder/node-types", response_model=api_models.NodeTypeResponse)
async def get_node_types(user_id: str = Depends(_require_user)):
    return services.list_node_types()


@router.post("/sessions", response_model=api_models.SessionResponse, status_code=status.HTTP_201_CREATED)
async def open_session(
    payload: api_models.SessionCreateRequest,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = await manager.open(user_id, payload)
    return services.session_response(session)


@router.get("/sessions/{session_id}", response_model=api_models.SessionResponse)
async def get_session(
    session_id: str,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = manager.get(user_id, session_id)
    return services.session_response(session, session_id)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_200_OK)
async def close_session(
    session_id: str,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        await manager.close(user_id, session_id)
    return {"ok": True}


@router.post("/sessions/{session_id}/nodes", status_code=status.HTTP_201_CREATED)
async def add_node(
    session_id: str,
    payload: api_models.NodeCreateRequest,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = manager.get(user_id, session_id)
        node = await session.add_node(
            payload.category,
            payload.component_type,
            label=payload.label,
            position=payload.position,
            config=payload.config,
        )
    return node.model_dump(mode="json")


@router.delete("/sessions/{session_id}/nodes/{node_id}")
async def remove_node(
    session_id: str,
    node_id: str,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = manager.get(user_id, session_id)
        removed = await session.remove_node(node_id)
    return {"removed_edges": [edge.id for edge in removed]}


@router.patch("/sessions/{session_id}/nodes/{node_id}/config")
async def update_node_config(
    session_id: str,
    node_id: str,
    payload: api_models.NodeConfigPatch,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = manager.get(user_id, session_id)
        node = await session.update_node_config(node_id, payload.config)
        if payload.output_schema is not None:
            await session.set_node_output_schema(node_id, payload.output_schema)
    return node.model_dump(mode="json")


@router.post("/sessions/{session_id}/edges", response_model=api_models.EdgeResponse, status_code=status.HTTP_201_CREATED)
async def connect_nodes(
    session_id: str,
    payload: api_models.EdgeCreateRequest,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = manager.get(user_id, session_id)
        connection = await session.connect(
            payload.source_node_id,
            payload.target_node_id,
            source_handle=payload.source_handle,
            target_handle=payload.target_handle,
        )
    warnings: List[str] = connection.warning.problems if connection.warning else []
    return api_models.EdgeResponse(edge=connection.edge, warnings=warnings)


@router.delete("/sessions/{session_id}/edges/{edge_id}")
async def disconnect_nodes(
    session_id: str,
    edge_id: str,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = manager.get(user_id, session_id)
        edge = await session.disconnect(edge_id)
    return {"ok": True, "edge_id": edge.id}


@router.post("/sessions/{session_id}/save", response_model=api_models.SaveResponse)
async def save_session(
    session_id: str,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = manager.get(user_id, session_id)
        return await services.save_session(manager, session)


@router.post("/sessions/{session_id}/runs", response_model=api_models.RunResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_run(
    session_id: str,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = manager.get(user_id, session_id)
        return await services.start_run(manager, session)


@router.get("/sessions/{session_id}/runs/{run_id}", response_model=api_models.RunResponse)
async def get_run(
    session_id: str,
    run_id: str,
    user_id: str = Depends(_require_user),
    manager: SessionManager = Depends(get_session_manager),
):
    with engine_errors():
        session = manager.get(user_id, session_id)
        return services.get_run(session, run_id)

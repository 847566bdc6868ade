from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, Header, Path, Query, Response

from taskmanager.api.schemas import (
    AuthResponse,
    ClaimResponse,
    Envelope,
    LoginRequest,
    NewTaskRequest,
    RegisterRequest,
    TaskResponse,
    UpdateTaskRequest,
    UserTokenInfo,
)
from taskmanager.logging import get_logger
from taskmanager.service.auth import TokenBundle
from taskmanager.service.authz import Policy, Principal
from taskmanager.service.errors import PersistenceError
from taskmanager.service.runtime import get_runtime
from taskmanager.storage.models import Task, TaskStatus

logger = get_logger(__name__)

router = APIRouter()

T = TypeVar("T")


async def _run_bounded(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run blocking service/store work off the event loop with a deadline."""
    timeout = get_runtime().settings.store_timeout_seconds
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        logger.error(
            "store_operation_timeout",
            operation=getattr(func, "__name__", "unknown"),
            timeout_seconds=timeout,
        )
        raise PersistenceError(
            "store operation timed out", detail={"timeout_seconds": timeout}
        ) from exc


def require_policy(policy: Policy) -> Callable[..., Any]:
    async def _dependency(authorization: Optional[str] = Header(None)) -> Principal:
        return get_runtime().authz.authorize(authorization, policy)

    return _dependency


def _auth_payload(bundle: TokenBundle) -> dict:
    return AuthResponse(
        access_token=bundle.access_token,
        token_type=bundle.token_type,
        expires_in=bundle.expires_in,
        expires_at=bundle.expires_at,
        user=UserTokenInfo(
            id=bundle.user.id,
            email=bundle.user.email,
            claims=[ClaimResponse(type=c.type, value=c.value) for c in bundle.user.claims],
        ),
    ).model_dump(mode="json")


def _task_payload(task: Task) -> dict:
    return TaskResponse(
        id=task.id,
        title=task.title,
        description=task.description,
        status=task.status,
        created_at=task.created_at,
        due_date=task.due_date,
    ).model_dump(mode="json", by_alias=True)


@router.post("/create-user", response_model=Envelope, tags=["auth"])
async def create_user(body: RegisterRequest):
    """Register an identity and return a bearer token for it."""
    runtime = get_runtime()
    bundle = await _run_bounded(
        runtime.auth.register, body.email, body.password, body.confirm_password
    )
    return Envelope(status="ok", data=_auth_payload(bundle))


@router.post("/auth", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for a bearer token.

    Raises:
        400: Invalid email or password, or the account is blocked
    """
    runtime = get_runtime()
    bundle = await _run_bounded(runtime.auth.login, body.email, body.password)
    return Envelope(status="ok", data=_auth_payload(bundle))


@router.get("/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    status: Optional[TaskStatus] = Query(None),
    principal: Principal = Depends(require_policy(Policy.AUTHENTICATED)),
):
    runtime = get_runtime()
    tasks = await _run_bounded(runtime.tasks.list, status)
    return Envelope(status="ok", data=[_task_payload(task) for task in tasks])


@router.get("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def get_task(
    task_id: int = Path(...),
    principal: Principal = Depends(require_policy(Policy.AUTHENTICATED)),
):
    runtime = get_runtime()
    task = await _run_bounded(runtime.tasks.get, task_id)
    return Envelope(status="ok", data=_task_payload(task))


@router.post("/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(
    body: NewTaskRequest,
    response: Response,
    principal: Principal = Depends(require_policy(Policy.AUTHENTICATED)),
):
    runtime = get_runtime()
    task = await _run_bounded(
        runtime.tasks.create, body.title, body.description, body.due_date
    )
    response.headers["Location"] = f"/tasks/{task.id}"
    return Envelope(status="ok", data=_task_payload(task))


@router.put("/tasks/{task_id}", status_code=204, tags=["tasks"])
async def update_task(
    body: UpdateTaskRequest,
    task_id: int = Path(...),
    principal: Principal = Depends(require_policy(Policy.AUTHENTICATED)),
):
    runtime = get_runtime()
    await _run_bounded(
        runtime.tasks.update,
        task_id,
        body.title,
        body.description,
        body.status,
        body.created_at,
        body.due_date,
    )
    return Response(status_code=204)


@router.delete("/tasks/{task_id}", status_code=204, tags=["tasks"])
async def delete_task(
    task_id: int = Path(...),
    principal: Principal = Depends(require_policy(Policy.DELETE_TASK)),
):
    runtime = get_runtime()
    await _run_bounded(runtime.tasks.soft_delete, task_id)
    return Response(status_code=204)

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, File, Header, Query, Response, UploadFile

from taskkeeper.api.schemas import (
    AuthResponse,
    AvatarResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    SignupRequest,
    TaskCreateRequest,
    TaskResponse,
    UserResponse,
)
from taskkeeper.logging import get_logger
from taskkeeper.service.auth import AuthContext
from taskkeeper.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer token; auth errors surface as 401 envelopes."""
    runtime = get_runtime()
    return await runtime.tokens.authenticate(authorization)


# users


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def signup(body: SignupRequest):
    """Create an account and open its first session.

    Raises:
        400: If a field is missing or invalid, or the email is taken
    """
    runtime = get_runtime()
    user, token = await runtime.users.sign_up(body.name, body.email, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(user=UserResponse.from_user(user), token=token),
    )


@router.post("/users/login", response_model=Envelope, tags=["users"])
async def login(body: LoginRequest):
    """Open a new session; existing sessions of the user stay valid.

    Raises:
        400: If the credentials do not match an account
    """
    runtime = get_runtime()
    user, token = await runtime.users.login(body.email, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(user=UserResponse.from_user(user), token=token),
    )


@router.post("/users/logout", response_model=Envelope, tags=["users"])
async def logout(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.users.logout(principal)
    return Envelope(status="ok", data=LogoutResponse(revoked=1))


@router.post("/users/logoutAll", response_model=Envelope, tags=["users"])
async def logout_all(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.users.logout_all(principal.user_id)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def read_profile(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = runtime.users.get_profile(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_profile(
    body: Dict[str, Any] = Body(...),
    principal: AuthContext = Depends(get_principal),
):
    """Change any of name, email and password.

    Raises:
        400: If a field is unknown or invalid, or the new email is taken
    """
    runtime = get_runtime()
    user = await runtime.users.update_profile(
        principal.user_id, body, current_token=principal.token
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def delete_account(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = await runtime.users.delete_account(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/users/me/avatar", response_model=Envelope, tags=["users"])
async def upload_avatar(
    avatar: UploadFile = File(...),
    principal: AuthContext = Depends(get_principal),
):
    """Store a JPEG or PNG avatar, replacing any previous one.

    Raises:
        400: If the file is too large or not an image
    """
    runtime = get_runtime()
    # Read one byte past the limit so oversize uploads are detectable
    content = await avatar.read(runtime.settings.max_avatar_bytes + 1)
    media_type = runtime.users.set_avatar(principal.user_id, avatar.filename, content)
    return Envelope(
        status="ok", data=AvatarResponse(media_type=media_type, size=len(content))
    )


@router.delete("/users/me/avatar", response_model=Envelope, tags=["users"])
async def delete_avatar(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    runtime.users.clear_avatar(principal.user_id)
    return Envelope(status="ok", data=None)


@router.get("/users/{user_id}/avatar", tags=["users"])
async def read_avatar(user_id: str):
    runtime = get_runtime()
    content, media_type = runtime.users.get_avatar(user_id)
    return Response(content=content, media_type=media_type)


# tasks


@router.post("/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(
    body: TaskCreateRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    task = runtime.tasks.create(principal.user_id, body.description, body.completed)
    return Envelope(status="ok", data=TaskResponse.from_task(task))


@router.get("/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    completed: Optional[str] = Query(None),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    limit: Optional[str] = Query(None),
    skip: Optional[str] = Query(None),
    principal: AuthContext = Depends(get_principal),
):
    """List the caller's tasks.

    ``completed`` filters by state, ``sortBy`` takes ``<field>:<asc|desc>``
    and ``limit``/``skip`` page through the result.
    """
    runtime = get_runtime()
    tasks = runtime.tasks.list(
        principal.user_id,
        completed=completed,
        sort_by=sort_by,
        limit=limit,
        skip=skip,
    )
    return Envelope(status="ok", data=[TaskResponse.from_task(t) for t in tasks])


@router.get("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def read_task(task_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    task = runtime.tasks.get(principal.user_id, task_id)
    return Envelope(status="ok", data=TaskResponse.from_task(task))


@router.patch("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    task_id: str,
    body: Dict[str, Any] = Body(...),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    task = runtime.tasks.update(principal.user_id, task_id, body)
    return Envelope(status="ok", data=TaskResponse.from_task(task))


@router.delete("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(task_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    task = runtime.tasks.delete(principal.user_id, task_id)
    return Envelope(status="ok", data=TaskResponse.from_task(task))

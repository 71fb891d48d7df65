"""Session API routes: the command surface over HTTP."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict

from tabvault.commands import CommandDispatcher

router = APIRouter()

_ERROR_STATUS = {
    "NotFoundError": 404,
    "InvalidStateError": 400,
    "VersionMismatchError": 400,
    "UnknownCommand": 400,
    "HostCallError": 502,
}


# ── Pydantic models ────────────────────────────────────

class CommandRequest(BaseModel):
    """A command message. Arguments other than ``cmd`` pass through as-is."""
    model_config = ConfigDict(extra="allow")

    cmd: str


class RenameRequest(BaseModel):
    new_name: str


class GroupRequest(BaseModel):
    group: str


def get_dispatcher(request: Request) -> CommandDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Session daemon not running")
    return dispatcher


async def _run(dispatcher: CommandDispatcher, msg: dict[str, Any]) -> dict[str, Any]:
    result = await dispatcher.dispatch(msg)
    if result["status"] == "error":
        status = _ERROR_STATUS.get(result["error"], 500)
        raise HTTPException(status_code=status, detail=result["message"])
    return result


# ── Commands ───────────────────────────────────────────

@router.post("/commands")
async def run_command(req: CommandRequest, dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    """Run any command verb, e.g. ``{"cmd": "undo-snapshot"}``."""
    return await _run(dispatcher, req.model_dump())


@router.get("/commands")
async def list_commands(dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    return {"commands": dispatcher.verbs}


# ── Sessions ───────────────────────────────────────────

@router.get("/sessions")
async def list_sessions(
    q: Optional[str] = Query(None, description="Space separated search terms"),
    by_tab: bool = Query(False, description="Match terms against tab titles"),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """List user, backup and on-change sessions, optionally filtered."""
    terms = q.split() if q else []
    return await _run(dispatcher, {"cmd": "list-sessions", "search_terms": terms, "search_by_tab": by_tab})


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(dispatcher, {"cmd": "get-sess", "session_id": session_id})


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(dispatcher, {"cmd": "delete-sess", "session_id": session_id})


@router.post("/sessions/{session_id}/rename")
async def rename_session(session_id: str, req: RenameRequest,
                         dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(dispatcher, {"cmd": "rename-sess", "session_id": session_id, "new_name": req.new_name})


@router.post("/sessions/{session_id}/group")
async def set_session_group(session_id: str, req: GroupRequest,
                            dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(dispatcher, {"cmd": "setgroup-sess", "session_id": session_id, "group": req.group})


@router.post("/sessions/{session_id}/restore")
async def restore_session(session_id: str, replace: bool = Query(False),
                          dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    cmd = "replace-sess" if replace else "restore-sess"
    return await _run(dispatcher, {"cmd": cmd, "session_id": session_id})


@router.post("/sessions/{session_id}/copy")
async def copy_session(session_id: str, dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    """Copy a backup or on-change session into the user sessions."""
    return await _run(dispatcher, {"cmd": "copy-sess", "session_id": session_id})


# ── History ────────────────────────────────────────────

@router.post("/history/undo")
async def undo(dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(dispatcher, {"cmd": "undo-snapshot"})


@router.post("/history/redo")
async def redo(dispatcher: CommandDispatcher = Depends(get_dispatcher)):
    return await _run(dispatcher, {"cmd": "redo-snapshot"})

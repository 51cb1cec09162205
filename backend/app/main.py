import asyncio
import logging
from contextlib import asynccontextmanager
from fnmatch import fnmatchcase
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from . import game
from .controller import GameController, RoomRegistry
from .db import InMemoryTree, settings, split_path
from .models import HostState, PlayerIdentity, Role
from .schemas import (
    AnswerIn,
    JoinIn,
    JoinOut,
    LeaveIn,
    LoadQuestionsIn,
    OrganizerIn,
    RankingVisibleIn,
    RoomSettingsIn,
    SnapshotOut,
    TreePatchIn,
)
from .utils import now_ms

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# players write their own roster entries straight into the tree
PLAYER_WRITABLE = "rooms/*/players/*"


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store = InMemoryTree()
    app.state.rooms = RoomRegistry(app.state.store, settings)
    logger.info("Quiz state service started (default room %s)", settings.ROOM_ID)
    yield
    await app.state.rooms.close()
    logger.info("Quiz state service shutting down")


app = FastAPI(title="Party Quiz Sync API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store(request: Request) -> InMemoryTree:
    return request.app.state.store


def get_rooms(request: Request) -> RoomRegistry:
    return request.app.state.rooms


def is_admin(x_admin_key: Optional[str]) -> bool:
    return x_admin_key == settings.ADMIN_KEY


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if not is_admin(x_admin_key):
        raise HTTPException(status_code=401, detail="Invalid admin key")


def _player_writable(path: str) -> bool:
    segments = split_path(path)
    return len(segments) >= 4 and fnmatchcase("/".join(segments[:4]), PLAYER_WRITABLE)


async def admin_controller(room_id: str, rooms: RoomRegistry = Depends(get_rooms)) -> GameController:
    try:
        return await rooms.admin(room_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


async def player_controller(room_id: str, store: InMemoryTree, player_id: Optional[str] = None) -> GameController:
    try:
        controller = GameController(
            store,
            Role.PLAYER,
            room_id=room_id,
            identity=PlayerIdentity(player_id=player_id or ""),
            settings=settings,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    await controller.refresh()
    return controller


def _state_out(state: Optional[HostState], before: HostState, controller: GameController) -> dict:
    changed = state is not None and state.revision != before.revision
    return {"ok": changed, "state": controller.state.to_wire()}


# -- store surface ----------------------------------------------------------


@app.get("/api/changes")
async def list_changes(
    after: int | None = None,
    limit: int = 200,
    prefix: str | None = None,
    store: InMemoryTree = Depends(get_store),
):
    changes = store.changes.list(after=after, limit=limit)
    latest_seq = changes[-1]["seq"] if changes else after
    result = {"changes": changes, "latest_seq": latest_seq}
    if prefix:
        result["touched"] = store.changes.touched(prefix, after or 0)
    return result


@app.get("/api/tree/{path:path}", response_model=SnapshotOut)
async def read_tree(path: str, store: InMemoryTree = Depends(get_store)):
    snapshot = await store.snapshot(path)
    return SnapshotOut(**snapshot.model_dump())


@app.put("/api/tree/{path:path}")
async def write_tree(
    path: str,
    request: Request,
    x_admin_key: Optional[str] = Header(default=None),
    store: InMemoryTree = Depends(get_store),
):
    if not is_admin(x_admin_key) and not _player_writable(path):
        raise HTTPException(status_code=401, detail="Invalid admin key")
    value = await request.json()
    try:
        await store.set(path, value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "seq": store.seq}


@app.patch("/api/tree")
async def patch_tree(
    payload: TreePatchIn,
    x_admin_key: Optional[str] = Header(default=None),
    store: InMemoryTree = Depends(get_store),
):
    if not is_admin(x_admin_key) and not all(_player_writable(p) for p in payload.updates):
        raise HTTPException(status_code=401, detail="Invalid admin key")
    try:
        await store.update(payload.updates)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "seq": store.seq}


@app.delete("/api/tree/{path:path}")
async def delete_tree(path: str, _: None = Depends(require_admin), store: InMemoryTree = Depends(get_store)):
    try:
        await store.remove(path)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "seq": store.seq}


async def _close_on_disconnect(websocket: WebSocket, subscription) -> None:
    # an idle path sends nothing, so only a read sees the client leave
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            subscription.close()
            return


@app.websocket("/ws/tree/{path:path}")
async def watch_tree(websocket: WebSocket, path: str):
    await websocket.accept()
    subscription = websocket.app.state.store.subscribe(path)
    watcher = asyncio.create_task(_close_on_disconnect(websocket, subscription))
    try:
        async for snapshot in subscription:
            await websocket.send_json(snapshot.model_dump())
    except WebSocketDisconnect:
        pass
    finally:
        watcher.cancel()
        subscription.close()


# -- room views -------------------------------------------------------------


@app.get("/api/rooms/{room_id}/state")
async def get_state(room_id: str, store: InMemoryTree = Depends(get_store)):
    controller = await player_controller(room_id, store)
    return controller.state.to_wire()


@app.get("/api/rooms/{room_id}/leaderboard")
async def get_leaderboard(room_id: str, player_id: Optional[str] = None, store: InMemoryTree = Depends(get_store)):
    controller = await player_controller(room_id, store)
    state = controller.state
    top = game.winner(state)
    now = now_ms()
    view = {
        "gameState": state.game_state.value,
        "leaderboard": controller.leaderboard(),
        "isFinalQuestion": state.is_final_question,
        "remainingSeconds": game.remaining_seconds(state, now),
        "timeUp": game.is_time_up(state, now),
        "answers": game.answer_stats(state),
        "winnerId": top.id if top and game.is_placement_revealed(state, 1) else None,
    }
    if player_id:
        view["resultVisible"] = game.is_player_result_visible(state, player_id)
    return view


# -- player actions ---------------------------------------------------------


@app.post("/api/rooms/{room_id}/join", response_model=JoinOut)
async def join(room_id: str, payload: JoinIn, store: InMemoryTree = Depends(get_store)):
    controller = await player_controller(room_id, store, payload.player_id)
    ok = await controller.join(payload.name)
    if not ok:
        raise HTTPException(status_code=400, detail="Could not join with that name")
    return JoinOut(ok=True, player_id=controller.identity.player_id, name=controller.identity.name)


@app.post("/api/rooms/{room_id}/answer")
async def answer(room_id: str, payload: AnswerIn, store: InMemoryTree = Depends(get_store)):
    controller = await player_controller(room_id, store, payload.player_id)
    ok = await controller.submit_answer(payload.option_index)
    return {"accepted": ok}


@app.post("/api/rooms/{room_id}/leave")
async def leave(room_id: str, payload: LeaveIn, store: InMemoryTree = Depends(get_store)):
    controller = await player_controller(room_id, store, payload.player_id)
    return {"ok": await controller.leave()}


# -- admin actions ----------------------------------------------------------


@app.get("/api/admin/verify")
async def verify(_: None = Depends(require_admin)):
    return {"ok": True}


@app.post("/api/rooms/{room_id}/admin/questions")
async def load_questions(
    payload: LoadQuestionsIn,
    _: None = Depends(require_admin),
    controller: GameController = Depends(admin_controller),
):
    if not payload.questions:
        raise HTTPException(status_code=400, detail="At least one question is required")
    before = controller.state
    result = await controller.load_questions(payload.questions, payload.quiz_title)
    return _state_out(result, before, controller)


@app.post("/api/rooms/{room_id}/admin/start")
async def start(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    before = controller.state
    return _state_out(await controller.start_game(), before, controller)


@app.post("/api/rooms/{room_id}/admin/timer")
async def start_timer(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    before = controller.state
    return _state_out(await controller.start_timer(), before, controller)


@app.post("/api/rooms/{room_id}/admin/reveal")
async def reveal(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    before = controller.state
    return _state_out(await controller.reveal(), before, controller)


@app.post("/api/rooms/{room_id}/admin/next")
async def next_question(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    before = controller.state
    return _state_out(await controller.next_question(), before, controller)


@app.post("/api/rooms/{room_id}/admin/finish")
async def finish(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    before = controller.state
    return _state_out(await controller.force_finish(), before, controller)


@app.post("/api/rooms/{room_id}/admin/ranking/advance")
async def advance_ranking(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    before = controller.state
    return _state_out(await controller.advance_ranking_stage(), before, controller)


@app.post("/api/rooms/{room_id}/admin/ranking/visible")
async def ranking_visible(
    payload: RankingVisibleIn,
    _: None = Depends(require_admin),
    controller: GameController = Depends(admin_controller),
):
    before = controller.state
    return _state_out(await controller.show_ranking_result(payload.visible), before, controller)


@app.post("/api/rooms/{room_id}/admin/reset")
async def reset(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    before = controller.state
    return _state_out(await controller.reset_game(), before, controller)


@app.post("/api/rooms/{room_id}/admin/settings")
async def update_settings(
    payload: RoomSettingsIn,
    _: None = Depends(require_admin),
    controller: GameController = Depends(admin_controller),
):
    before = controller.state
    result = await controller.update_settings(**payload.model_dump(exclude_none=True))
    return _state_out(result, before, controller)


@app.post("/api/rooms/{room_id}/admin/players/reset")
async def reset_players(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    return {"ok": await controller.reset_all_players()}


@app.post("/api/rooms/{room_id}/admin/players/scores/reset")
async def reset_scores(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    await controller.roster.refresh()
    return {"ok": await controller.reset_player_scores()}


@app.post("/api/rooms/{room_id}/admin/players/answers/reset")
async def reset_answers(_: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    await controller.roster.refresh()
    return {"ok": await controller.reset_player_answers()}


@app.post("/api/rooms/{room_id}/admin/players/{player_id}/organizer")
async def toggle_organizer(
    player_id: str,
    payload: OrganizerIn,
    _: None = Depends(require_admin),
    controller: GameController = Depends(admin_controller),
):
    await controller.roster.refresh()
    current = payload.current
    if current is None:
        player = controller.state.player(player_id)
        if player is None:
            raise HTTPException(status_code=404, detail="Player not found")
        current = player.is_organizer
    return {"ok": await controller.toggle_organizer(player_id, current)}


@app.delete("/api/rooms/{room_id}/admin/players/{player_id}")
async def kick(player_id: str, _: None = Depends(require_admin), controller: GameController = Depends(admin_controller)):
    return {"ok": await controller.kick_player(player_id)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from showjudge import catalog
from showjudge.admin_scores import ScoreOverride
from showjudge.config import ConfigStore, configure_logging
from showjudge.engine import VotingEngine
from showjudge.errors import ValidationError, VotingError
from showjudge.models import Phase, Role, SUBSCRIBER_ROLES, Track
from showjudge.notifications import NotificationHub

log = logging.getLogger(__name__)

STATUS_BY_REASON: Dict[str, int] = {
    "phase_closed": 409,
    "already_submitted": 409,
    "already_voted": 409,
    "validation_error": 422,
    "not_found": 404,
    "storage_error": 503,
    "publish_conflict": 503,
}

router = APIRouter()


# -----------------------
# Request bodies
# -----------------------
class PhaseChange(BaseModel):
    phase: Phase


class ScoreSheet(BaseModel):
    scores: Dict[int, Optional[Union[int, str]]]


class VoteIn(BaseModel):
    entry_id: int


class OverrideIn(BaseModel):
    judge_id: int
    criterion_id: int
    score: Optional[Union[int, str]] = None


class OverrideSheet(BaseModel):
    scores: List[OverrideIn]


class CategoryIn(BaseModel):
    name: str


class GroupIn(BaseModel):
    name: str
    category_id: Optional[int] = None


class CriterionIn(BaseModel):
    category_id: int
    label: str
    min_score: int = 0
    max_score: int = 10
    display_order: int = 0


class EntryIn(BaseModel):
    label: str
    category_id: Optional[int] = None
    group_id: Optional[int] = None
    is_active: bool = True


class TrackIn(BaseModel):
    name: str
    description: str = ""
    allow_all_users: bool = True
    category_id: Optional[int] = None
    group_id: Optional[int] = None


class VotersIn(BaseModel):
    voter_ids: List[int]


# -----------------------
# Identity (supplied by the upstream auth layer)
# -----------------------
@dataclass(frozen=True)
class Caller:
    user_id: int
    role: Role


def get_engine(request: Request) -> VotingEngine:
    return request.app.state.engine


def current_user(x_user_id: int = Header(...), x_user_role: str = Header(...)) -> Caller:
    try:
        role = Role(x_user_role.strip().lower())
    except ValueError:
        raise HTTPException(403, "Unknown role.")
    if role is Role.ALL:
        raise HTTPException(403, "Unknown role.")
    return Caller(user_id=x_user_id, role=role)


def require_admin(caller: Caller = Depends(current_user)) -> Caller:
    if caller.role is not Role.ADMIN:
        raise HTTPException(403, "Admin access required.")
    return caller


def require_judge(caller: Caller = Depends(current_user)) -> Caller:
    if caller.role is not Role.JUDGE:
        raise HTTPException(403, "Judge access required.")
    return caller


async def voting_error_handler(request: Request, exc: VotingError) -> JSONResponse:
    status = STATUS_BY_REASON.get(exc.reason, 400)
    if status >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content={"error": exc.reason, "detail": str(exc)})


# -----------------------
# Routes: Phases & publishing
# -----------------------
@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/phases")
def get_phases(engine: VotingEngine = Depends(get_engine)):
    return engine.phases.snapshot()


@router.post("/admin/tracks/{track}/phase")
def set_phase(
    track: Track,
    body: PhaseChange,
    _admin: Caller = Depends(require_admin),
    engine: VotingEngine = Depends(get_engine),
):
    previous = engine.phases.set_phase(track, body.phase)
    return {"track": track.value, "previous": previous.value, "phase": body.phase.value}


@router.post("/admin/tracks/{track}/publish")
def publish(track: Track, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    report = engine.publisher.publish(track)
    return {
        "track": track.value,
        "phase": engine.phases.get_phase(track).value,
        "results": [r.to_dict() for r in report.rows],
    }


@router.post("/admin/tracks/{track}/lock")
def lock_and_publish(track: Track, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    # expert publish locks by itself; specialty publish does not
    if track is Track.SPECIALTY:
        engine.phases.set_phase(Track.SPECIALTY, Phase.LOCKED)
    return publish(track, _admin, engine)


# -----------------------
# Routes: Submissions
# -----------------------
@router.post("/judge/entries/{entry_id}/scores")
def submit_scores(
    entry_id: int,
    body: ScoreSheet,
    judge: Caller = Depends(require_judge),
    engine: VotingEngine = Depends(get_engine),
):
    receipt = engine.submissions.submit_scores(judge.user_id, entry_id, body.scores)
    return {"entry_id": receipt.entry_id, "inserted": receipt.inserted}


@router.post("/vote/{track_id}")
def cast_vote(
    track_id: int,
    body: VoteIn,
    caller: Caller = Depends(current_user),
    engine: VotingEngine = Depends(get_engine),
):
    receipt = engine.submissions.cast_vote(caller.user_id, track_id, body.entry_id)
    return {"vote_id": receipt.vote_id, "track_id": receipt.track_id, "entry_id": receipt.entry_id}


# -----------------------
# Routes: Standings & results
# -----------------------
@router.get("/admin/standings/expert")
def expert_standings(
    group_id: Optional[int] = None,
    _admin: Caller = Depends(require_admin),
    engine: VotingEngine = Depends(get_engine),
):
    if group_id is not None:
        return [s.to_dict() for s in engine.aggregation.rank_expert(group_id)]
    top = engine.aggregation.expert_podiums(engine.config.podium_places)
    return [
        {"group_id": int(r.group_id), "place": int(r.place), "entry_id": int(r.entry_id), "score": int(r.total_score)}
        for r in top.itertuples(index=False)
    ]


@router.get("/admin/standings/specialty")
def specialty_standings(
    track_id: Optional[int] = None,
    _admin: Caller = Depends(require_admin),
    engine: VotingEngine = Depends(get_engine),
):
    if track_id is not None:
        return [s.to_dict() for s in engine.aggregation.rank_specialty(track_id)]
    top = engine.aggregation.specialty_winners()
    return [
        {"track_id": int(r.track_id), "entry_id": int(r.entry_id), "votes": int(r.vote_count)}
        for r in top.itertuples(index=False)
    ]


@router.get("/admin/judge-status")
def judge_status(_admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    return engine.aggregation.judging_progress()


@router.get("/results/{track}")
def published_results(
    track: Track,
    caller: Caller = Depends(current_user),
    engine: VotingEngine = Depends(get_engine),
):
    if caller.role is not Role.ADMIN and not engine.phases.results_visible(track):
        raise HTTPException(404, "Results not yet published.")
    return [r.to_dict() for r in engine.publisher.published_results(track)]


@router.get("/admin/results/{track}/export")
def export_results(track: Track, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    return Response(
        content=engine.publisher.results_csv(track),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{track.value}_results.csv"'},
    )


# -----------------------
# Routes: Admin corrections & moderation
# -----------------------
@router.get("/admin/entries/{entry_id}/scores")
def entry_scores(entry_id: int, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    return engine.admin_scores.scores_for_entry(entry_id)


@router.put("/admin/entries/{entry_id}/scores")
def replace_entry_scores(
    entry_id: int,
    body: OverrideSheet,
    _admin: Caller = Depends(require_admin),
    engine: VotingEngine = Depends(get_engine),
):
    overrides = [ScoreOverride(o.judge_id, o.criterion_id, o.score) for o in body.scores]
    inserted = engine.admin_scores.replace_scores(entry_id, overrides)
    return {"entry_id": entry_id, "inserted": inserted}


@router.get("/admin/tracks/{track_id}/votes")
def track_votes(track_id: int, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    return engine.submissions.list_votes(track_id)


@router.delete("/admin/votes/{vote_id}")
def delete_vote(vote_id: int, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    engine.submissions.delete_vote(vote_id)
    return {"deleted": vote_id}


# -----------------------
# Routes: Event setup
# -----------------------
def _create(engine: VotingEngine, what: str, add, *args, **kwargs) -> int:
    try:
        with engine.database.transaction() as conn:
            return add(conn, *args, **kwargs)
    except sqlite3.IntegrityError as e:
        raise ValidationError(f"Could not create {what}: {e}") from e


@router.post("/admin/categories")
def create_category(body: CategoryIn, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    return {"category_id": _create(engine, "category", catalog.add_category, body.name)}


@router.post("/admin/groups")
def create_group(body: GroupIn, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    return {"group_id": _create(engine, "group", catalog.add_group, body.name, body.category_id)}


@router.post("/admin/criteria")
def create_criterion(body: CriterionIn, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    criterion_id = _create(
        engine, "criterion", catalog.add_criterion,
        body.category_id, body.label, body.min_score, body.max_score, body.display_order,
    )
    return {"criterion_id": criterion_id}


@router.post("/admin/entries")
def create_entry(body: EntryIn, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    entry_id = _create(engine, "entry", catalog.add_entry, body.label, body.category_id, body.group_id, body.is_active)
    return {"entry_id": entry_id}


@router.post("/admin/tracks")
def create_track(body: TrackIn, _admin: Caller = Depends(require_admin), engine: VotingEngine = Depends(get_engine)):
    track_id = _create(
        engine, "specialty vote", catalog.add_specialty_track,
        body.name, body.description, body.allow_all_users, body.category_id, body.group_id,
    )
    return {"track_id": track_id}


@router.post("/admin/tracks/{track_id}/voters")
def add_voters(
    track_id: int,
    body: VotersIn,
    _admin: Caller = Depends(require_admin),
    engine: VotingEngine = Depends(get_engine),
):
    added = _create(engine, "voters", catalog.add_track_voters, track_id, body.voter_ids)
    return {"track_id": track_id, "added": added}


# -----------------------
# WebSocket: role-scoped notifications
# -----------------------
@router.websocket("/ws/notifications")
async def notifications(ws: WebSocket, role: str = "user"):
    try:
        subscriber_role = Role(role.strip().lower())
    except ValueError:
        subscriber_role = None
    if subscriber_role not in SUBSCRIBER_ROLES:
        log.warning(f"WS connect denied: invalid role {role!r}")
        await ws.close(code=4403, reason="invalid_role")
        return

    hub: NotificationHub = ws.app.state.hub
    engine: VotingEngine = ws.app.state.engine
    await ws.accept()
    hub.subscribe(ws, subscriber_role, loop=asyncio.get_running_loop())
    try:
        await ws.send_json({"type": "subscribed", "role": subscriber_role.value, "phases": engine.phases.snapshot()})
        while True:
            # clients only listen; inbound frames are ignored
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(ws)


# -----------------------
# App
# -----------------------
def create_app(config_store: Optional[ConfigStore] = None, hub: Optional[NotificationHub] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = config_store or ConfigStore.from_env()
        config = store.load()
        configure_logging(config.log_level)
        app.state.hub = hub or NotificationHub(send_timeout=config.notification_timeout_seconds)
        app.state.engine = VotingEngine(store, config, app.state.hub)
        app.state.engine.database.init()
        yield

    app = FastAPI(title="Show Judge", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(VotingError, voting_error_handler)
    return app


app = create_app()

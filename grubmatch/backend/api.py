"""FastAPI endpoints for group sessions, swiping and the websocket channel."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from pydantic import Field, ValidationError

from .candidates import CandidateCache
from .config import BackendSettings, load_settings
from .engine import MatchRule
from .errors import GrubMatchError, StoreError, register_exception_handlers
from .events import ErrorEvent
from .hub import BroadcastHub
from .notify import Notifier
from .providers import CandidateProvider, GooglePlacesEnricher, YelpCandidateProvider
from .schemas import Group, GroupStatus, Preferences, ReactionType, Restaurant, Swipe, WireModel
from .security import MemberBindings
from .service import GroupService
from .store import GroupStore, create_store

logger = logging.getLogger(__name__)

BINDING_HEADER = "X-Member-Bindings"
BINDING_COOKIE = "member_bindings"
CLEANUP_INTERVAL_SECONDS = 60 * 60


class CreateGroupRequest(WireModel):
    name: str = Field(min_length=1, max_length=100)
    host_name: str = Field(min_length=1, max_length=50)


class CreateGroupResponse(WireModel):
    group: Group
    member_id: str
    leader_token: str


class JoinGroupRequest(WireModel):
    code: str = Field(min_length=1, max_length=12)
    member_name: str = Field(min_length=1, max_length=50)


class JoinGroupResponse(WireModel):
    group: Group
    member_id: str


class MemberRequest(WireModel):
    member_id: str = Field(min_length=1)


class PreferencesRequest(MemberRequest):
    preferences: Preferences


class StatusRequest(MemberRequest):
    status: GroupStatus


class SwipeRequest(MemberRequest):
    restaurant_id: str = Field(min_length=1)
    liked: bool
    super_liked: bool = False


class SwipeResponse(WireModel):
    swipe: Swipe
    matched: Restaurant | None = None


class NudgeRequest(MemberRequest):
    restaurant_id: str = Field(min_length=1)


class NudgeResponse(WireModel):
    nudged_member_ids: list[str]


class ReactionRequest(MemberRequest):
    restaurant_id: str = Field(min_length=1)
    reaction: ReactionType


class ReclaimRequest(WireModel):
    leader_token: str = Field(min_length=1)
    member_name: str = Field(min_length=1, max_length=50)


class ReclaimResponse(WireModel):
    group: Group
    member_id: str
    reattached: bool


class GroupResponse(WireModel):
    group: Group


class RestaurantsResponse(WireModel):
    restaurants: list[Restaurant]


class LoadMoreResponse(WireModel):
    restaurants: list[Restaurant]
    added: int


class MatchesResponse(WireModel):
    matches: list[Restaurant]


def _default_provider(settings: BackendSettings) -> CandidateProvider:
    enricher = None
    if settings.google_places_api_key:
        enricher = GooglePlacesEnricher(api_key=settings.google_places_api_key, timeout=settings.provider_timeout)
    return YelpCandidateProvider(api_key=settings.yelp_api_key, timeout=settings.provider_timeout, enricher=enricher)


def read_binding(request: Request) -> str | None:
    return request.headers.get(BINDING_HEADER) or request.cookies.get(BINDING_COOKIE)


def attach_binding(response: Response, binding: str) -> None:
    response.headers[BINDING_HEADER] = binding
    response.set_cookie(BINDING_COOKIE, binding, httponly=True, samesite="lax")


def create_app(
    store: GroupStore | None = None,
    settings: BackendSettings | None = None,
    provider: CandidateProvider | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    app_settings = settings if settings is not None else load_settings()
    group_store = store if store is not None else create_store(app_settings.database_url)
    websocket_hub = BroadcastHub()
    cache = CandidateCache(
        store=group_store,
        provider=provider if provider is not None else _default_provider(app_settings),
        timeout=app_settings.provider_timeout + 2,
    )
    group_service = GroupService(
        store=group_store,
        bindings=MemberBindings(secret=app_settings.binding_secret),
        candidates=cache,
        hub=websocket_hub,
        match_rule=MatchRule(app_settings.match_rule),
    )
    if notifier is not None:
        group_service.notifier = notifier

    async def purge_periodically() -> None:
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            try:
                group_service.purge_stale_groups(app_settings.group_ttl_hours)
            except StoreError:
                logger.exception("Stale group cleanup failed")

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        cleanup = asyncio.create_task(purge_periodically())
        try:
            yield
        finally:
            cleanup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup

    app = FastAPI(title="GrubMatch API", version="0.3.0", lifespan=lifespan)
    app.state.websocket_hub = websocket_hub
    app.state.group_service = group_service
    register_exception_handlers(app)

    def get_service() -> GroupService:
        return group_service

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/groups", response_model=CreateGroupResponse)
    async def create_group(
        payload: CreateGroupRequest,
        request: Request,
        response: Response,
        service: GroupService = Depends(get_service),
    ) -> CreateGroupResponse:
        created, binding = await service.create_group(
            name=payload.name,
            host_name=payload.host_name,
            binding=read_binding(request),
        )
        attach_binding(response, binding)
        return CreateGroupResponse(
            group=created.group,
            member_id=created.host_member_id,
            leader_token=created.leader_token,
        )

    @app.post("/api/groups/join", response_model=JoinGroupResponse)
    async def join_group(
        payload: JoinGroupRequest,
        request: Request,
        response: Response,
        service: GroupService = Depends(get_service),
    ) -> JoinGroupResponse:
        joined, binding = await service.join_group(
            code=payload.code,
            member_name=payload.member_name,
            binding=read_binding(request),
        )
        attach_binding(response, binding)
        return JoinGroupResponse(group=joined.group, member_id=joined.member_id)

    @app.get("/api/groups/{group_id}", response_model=GroupResponse)
    def get_group(
        group_id: str,
        member_id: str | None = Query(default=None, alias="memberId"),
        service: GroupService = Depends(get_service),
    ) -> GroupResponse:
        return GroupResponse(group=service.get_group(group_id, member_id=member_id))

    @app.post("/api/groups/{group_id}/start", response_model=GroupResponse)
    async def start_session(
        group_id: str,
        payload: PreferencesRequest,
        request: Request,
        service: GroupService = Depends(get_service),
    ) -> GroupResponse:
        group = await service.start_session(group_id, payload.member_id, payload.preferences, read_binding(request))
        return GroupResponse(group=group)

    @app.patch("/api/groups/{group_id}/preferences", response_model=GroupResponse)
    async def update_preferences(
        group_id: str,
        payload: PreferencesRequest,
        request: Request,
        service: GroupService = Depends(get_service),
    ) -> GroupResponse:
        group = await service.update_preferences(group_id, payload.member_id, payload.preferences, read_binding(request))
        return GroupResponse(group=group)

    @app.patch("/api/groups/{group_id}/status", response_model=GroupResponse)
    async def set_status(
        group_id: str,
        payload: StatusRequest,
        request: Request,
        service: GroupService = Depends(get_service),
    ) -> GroupResponse:
        group = await service.set_status(group_id, payload.member_id, payload.status, read_binding(request))
        return GroupResponse(group=group)

    @app.get("/api/groups/{group_id}/restaurants", response_model=RestaurantsResponse)
    async def get_restaurants(
        group_id: str,
        service: GroupService = Depends(get_service),
    ) -> RestaurantsResponse:
        return RestaurantsResponse(restaurants=await service.get_candidates(group_id))

    @app.post(
        "/api/groups/{group_id}/restaurants/load-more",
        response_model=LoadMoreResponse,
    )
    async def load_more(
        group_id: str,
        service: GroupService = Depends(get_service),
    ) -> LoadMoreResponse:
        result = await service.load_more(group_id)
        return LoadMoreResponse(restaurants=result.restaurants, added=result.added)

    @app.post("/api/groups/{group_id}/swipe", response_model=SwipeResponse)
    async def swipe(
        group_id: str,
        payload: SwipeRequest,
        request: Request,
        service: GroupService = Depends(get_service),
    ) -> SwipeResponse:
        outcome = await service.swipe(
            group_id,
            payload.member_id,
            payload.restaurant_id,
            liked=payload.liked,
            super_liked=payload.super_liked,
            binding=read_binding(request),
        )
        return SwipeResponse(swipe=outcome.swipe, matched=outcome.matched)

    @app.delete("/api/groups/{group_id}/swipe/{restaurant_id}", status_code=204)
    async def undo_swipe(
        group_id: str,
        restaurant_id: str,
        request: Request,
        member_id: str = Query(min_length=1, alias="memberId"),
        service: GroupService = Depends(get_service),
    ) -> Response:
        await service.undo_swipe(group_id, member_id, restaurant_id, read_binding(request))
        return Response(status_code=204)

    @app.get("/api/groups/{group_id}/matches", response_model=MatchesResponse)
    async def get_matches(
        group_id: str,
        service: GroupService = Depends(get_service),
    ) -> MatchesResponse:
        return MatchesResponse(matches=await service.get_matches(group_id))

    @app.post("/api/groups/{group_id}/done", response_model=GroupResponse)
    async def done_swiping(
        group_id: str,
        payload: MemberRequest,
        request: Request,
        service: GroupService = Depends(get_service),
    ) -> GroupResponse:
        group = await service.done_swiping(group_id, payload.member_id, read_binding(request))
        return GroupResponse(group=group)

    @app.post("/api/groups/{group_id}/nudge", response_model=NudgeResponse)
    async def nudge(
        group_id: str,
        payload: NudgeRequest,
        request: Request,
        service: GroupService = Depends(get_service),
    ) -> NudgeResponse:
        targets = await service.nudge(group_id, payload.member_id, payload.restaurant_id, read_binding(request))
        return NudgeResponse(nudged_member_ids=targets)

    @app.post("/api/groups/{group_id}/reactions", status_code=204)
    async def react(
        group_id: str,
        payload: ReactionRequest,
        request: Request,
        service: GroupService = Depends(get_service),
    ) -> Response:
        await service.react(group_id, payload.member_id, payload.restaurant_id, payload.reaction, read_binding(request))
        return Response(status_code=204)

    @app.delete("/api/groups/{group_id}/members/{member_id}", response_model=GroupResponse)
    async def remove_member(
        group_id: str,
        member_id: str,
        request: Request,
        host_member_id: str = Query(min_length=1, alias="hostMemberId"),
        service: GroupService = Depends(get_service),
    ) -> GroupResponse:
        group = await service.remove_member(group_id, host_member_id, member_id, read_binding(request))
        return GroupResponse(group=group)

    @app.post("/api/groups/{group_id}/leave", response_model=GroupResponse)
    async def leave_group(
        group_id: str,
        payload: MemberRequest,
        request: Request,
        service: GroupService = Depends(get_service),
    ) -> GroupResponse:
        group = await service.leave_group(group_id, payload.member_id, read_binding(request))
        return GroupResponse(group=group)

    @app.post("/api/groups/{group_id}/reclaim", response_model=ReclaimResponse)
    async def reclaim_leadership(
        group_id: str,
        payload: ReclaimRequest,
        request: Request,
        response: Response,
        service: GroupService = Depends(get_service),
    ) -> ReclaimResponse:
        claim, binding = await service.reclaim_leadership(
            group_id,
            leader_token=payload.leader_token,
            member_name=payload.member_name,
            binding=read_binding(request),
        )
        attach_binding(response, binding)
        return ReclaimResponse(group=claim.group, member_id=claim.member.id, reattached=claim.reattached)

    @app.websocket("/ws")
    async def group_ws(websocket: WebSocket) -> None:
        group_id = websocket.query_params.get("groupId")
        member_id = websocket.query_params.get("memberId")
        binding = websocket.query_params.get("binding")
        if not group_id or not member_id:
            await websocket.close(code=1008)
            return
        try:
            await group_service.connect(websocket, group_id=group_id, member_id=member_id, binding=binding)
        except GrubMatchError as exc:
            logger.info("Rejected websocket for group %s: %s", group_id, exc.code)
            websocket_hub.unregister(websocket)
            await websocket.close(code=1008)
            return

        try:
            while websocket.application_state == WebSocketState.CONNECTED:
                raw = await websocket.receive_text()
                try:
                    await group_service.handle_message(websocket, group_id, member_id, binding, json.loads(raw))
                except (ValueError, ValidationError):
                    await websocket_hub.send(websocket, ErrorEvent(code="invalid_message", message="Malformed message"))
                except StoreError:
                    logger.exception("Store failure while handling a message for group %s", group_id)
                    await websocket_hub.send(websocket, ErrorEvent(code="store_error", message="Internal server error"))
                except GrubMatchError as exc:
                    await websocket_hub.send(websocket, ErrorEvent(code=exc.code, message=exc.message))
        except WebSocketDisconnect:
            logger.debug("Member %s disconnected from group %s", member_id, group_id)
        finally:
            websocket_hub.unregister(websocket)

    return app


app = create_app()

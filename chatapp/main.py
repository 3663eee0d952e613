import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from chatapp import calls, presence, repository
from chatapp.buckets import (
    ObjectNotFound,
    UploadRejected,
    get_object_store,
    image_extension,
    image_object_name,
    public_object_url,
    validate_image,
)
from chatapp.config import settings
from chatapp.logging_utils import RequestLoggingMiddleware, log_request_data, setup_logging
from chatapp.metrics import get_metrics, get_metrics_content_type, record_message_created
from chatapp.models import Conversation, Message, MessageType, Profile
from chatapp.policies import (
    AVATARS_BUCKET,
    BUCKETS,
    CHAT_IMAGES_BUCKET,
    PolicyViolation,
    can_read_object,
    check_object_insert,
    is_conversation_participant,
)
from chatapp.realtime import calls_channel, feed, messages_channel, participants_channel
from chatapp.realtime import router as realtime_router
from chatapp.repository import Conflict
from chatapp.schemas import (
    AuthResponse,
    CallInviteResponse,
    CallRespondRequest,
    CallRespondResponse,
    ConversationCreateRequest,
    ConversationResponse,
    DirectConversationRequest,
    ErrorResponse,
    HealthResponse,
    LoginRequest,
    MessageCreateRequest,
    MessageResponse,
    OnlineUsersResponse,
    ParticipantCreateRequest,
    ParticipantResponse,
    PresenceResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    SenderProfile,
    SignupRequest,
)
from chatapp.storage import check_db_health, get_db, init_db
from chatapp.utils import verify_api_key


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the schema before serving; nothing to release on shutdown."""
    init_db()
    yield


app = FastAPI(
    title="ChatApp API",
    description="Conversations, messages, presence and video-call invitations with a realtime change feed",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.include_router(realtime_router)


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(PolicyViolation)
async def policy_violation_handler(request: Request, exc: PolicyViolation) -> JSONResponse:
    log_request_data(request, result="policy_violation", table=exc.table, operation=exc.operation)
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": exc.detail})


@app.exception_handler(UploadRejected)
async def upload_rejected_handler(request: Request, exc: UploadRejected) -> JSONResponse:
    log_request_data(request, result="upload_rejected")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Conflict)
async def conflict_handler(request: Request, exc: Conflict) -> JSONResponse:
    log_request_data(request, result="conflict")
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


# =============================================================================
# Authentication Dependencies
# =============================================================================

def require_api_key(apikey: Annotated[str | None, Header()] = None) -> None:
    if not verify_api_key(apikey, settings.PUBLIC_API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid api key")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def current_user(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    _: None = Depends(require_api_key),
    db: Session = Depends(get_db),
) -> str:
    """Resolve the bearer token to the caller's identity (401 when missing or invalid)."""
    token = _bearer_token(authorization)
    user_id = repository.resolve_token(db, token) if token else None
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    request.state.user_id = user_id
    return user_id


def optional_user(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    db: Session = Depends(get_db),
) -> Optional[str]:
    token = _bearer_token(authorization)
    user_id = repository.resolve_token(db, token) if token else None
    if user_id:
        request.state.user_id = user_id
    return user_id


CurrentUser = Annotated[str, Depends(current_user)]


# =============================================================================
# Response helpers
# =============================================================================

def _profile_response(profile: Profile) -> ProfileResponse:
    response = ProfileResponse.model_validate(profile)
    response.online = presence.is_online(profile.last_seen)
    return response


def _conversation_response(db: Session, user_id: str, conversation: Conversation) -> ConversationResponse:
    participant_ids = [p.user_id for p in repository.list_participants(db, user_id, conversation.id)]
    profiles = repository.get_profiles(db, participant_ids)
    response = ConversationResponse.model_validate(conversation)
    response.participants = [_profile_response(p) for p in profiles]
    return response


def _message_response(message: Message, profiles: dict[str, Profile]) -> MessageResponse:
    response = MessageResponse.model_validate(message)
    profile = profiles.get(message.sender_id)
    if profile is not None:
        response.sender_profile = SenderProfile.model_validate(profile)
    return response


def _require_conversation(db: Session, user_id: str, conversation_id: str) -> Conversation:
    conversation = repository.get_conversation(db, user_id, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")
    return conversation


def _require_profile(db: Session, user_id: str) -> Profile:
    profile = repository.get_profile(db, user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    return profile


def _publish_message(db: Session, message: Message) -> MessageResponse:
    sender = repository.get_profile(db, message.sender_id)
    response = _message_response(message, {message.sender_id: sender} if sender else {})
    record_message_created(message.message_type)
    feed.publish(messages_channel(message.conversation_id), "INSERT", "messages", response.model_dump())
    return response


def _publish_participants(rows) -> None:
    for row in rows:
        feed.publish(
            participants_channel(row.user_id),
            "INSERT",
            "conversation_participants",
            ParticipantResponse.model_validate(row).model_dump(),
        )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """200 whenever the process can answer."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """503 until the public API key is configured and every table exists."""
    if not settings.PUBLIC_API_KEY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="PUBLIC_API_KEY not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Auth Routes
# =============================================================================

@app.post(
    "/auth/signup",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
    responses={409: {"model": ErrorResponse, "description": "Email or username taken"}},
)
async def signup(request: Request, body: SignupRequest, db: Session = Depends(get_db)) -> AuthResponse:
    """
    Register an account. Its profile is created automatically with the given
    username and display name.
    """
    account = repository.create_account(
        db,
        email=body.email,
        password=body.password,
        username=body.username,
        display_name=body.display_name,
    )
    token = repository.issue_token(db, account.id)
    log_request_data(request, user_id=account.id, result="created")
    return AuthResponse(user_id=account.id, access_token=token.token, expires_at=token.expires_at)


@app.post(
    "/auth/login",
    response_model=AuthResponse,
    dependencies=[Depends(require_api_key)],
    responses={401: {"model": ErrorResponse, "description": "Invalid credentials"}},
)
async def login(request: Request, body: LoginRequest, db: Session = Depends(get_db)) -> AuthResponse:
    account = repository.authenticate(db, body.email, body.password)
    if account is None:
        log_request_data(request, result="invalid_credentials")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid email or password")
    token = repository.issue_token(db, account.id)
    log_request_data(request, user_id=account.id, result="ok")
    return AuthResponse(user_id=account.id, access_token=token.token, expires_at=token.expires_at)


@app.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    user_id: CurrentUser,
    authorization: Annotated[str | None, Header()] = None,
    db: Session = Depends(get_db),
) -> Response:
    repository.revoke_token(db, _bearer_token(authorization))
    logger.info(f"User logged out: {user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Profile Routes
# =============================================================================

@app.get("/profiles/me", response_model=ProfileResponse)
async def get_my_profile(user_id: CurrentUser, db: Session = Depends(get_db)) -> ProfileResponse:
    return _profile_response(_require_profile(db, user_id))


@app.patch(
    "/profiles/me",
    response_model=ProfileResponse,
    responses={409: {"model": ErrorResponse, "description": "Username taken"}},
)
async def update_my_profile(
    body: ProfileUpdateRequest, user_id: CurrentUser, db: Session = Depends(get_db)
) -> ProfileResponse:
    _require_profile(db, user_id)
    profile = repository.update_profile(db, user_id, user_id, **body.model_dump(exclude_none=True))
    return _profile_response(profile)


@app.post("/profiles/me/avatar", response_model=ProfileResponse)
async def upload_avatar(
    request: Request,
    user_id: CurrentUser,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
) -> ProfileResponse:
    """Replace the caller's avatar. Avatars are publicly readable."""
    data = await file.read()
    validate_image(file.content_type, len(data))

    object_name = f"{user_id}/avatar.{image_extension(file.content_type)}"
    check_object_insert(user_id, AVATARS_BUCKET, object_name)
    get_object_store().put(AVATARS_BUCKET, object_name, data)

    profile = repository.update_profile(
        db, user_id, user_id, avatar_url=public_object_url(AVATARS_BUCKET, object_name)
    )
    log_request_data(request, object_name=object_name, result="stored")
    return _profile_response(profile)


@app.get("/profiles", response_model=list[ProfileResponse])
async def search_profiles(
    user_id: CurrentUser,
    q: Annotated[str, Query(description="Case-insensitive match on username or display name")] = "",
    db: Session = Depends(get_db),
) -> list[ProfileResponse]:
    """Find other users to start a chat with (at most 10 results, never the caller)."""
    profiles = repository.search_profiles(db, user_id, q)
    logger.debug(f"Profile search '{q}' returned {len(profiles)} result(s)")
    return [_profile_response(p) for p in profiles]


@app.get("/profiles/{profile_user_id}", response_model=ProfileResponse)
async def get_profile(profile_user_id: str, user_id: CurrentUser, db: Session = Depends(get_db)) -> ProfileResponse:
    return _profile_response(_require_profile(db, profile_user_id))


# =============================================================================
# Presence Routes
# =============================================================================

@app.post("/presence", response_model=PresenceResponse)
async def heartbeat(user_id: CurrentUser, db: Session = Depends(get_db)) -> PresenceResponse:
    return PresenceResponse(user_id=user_id, last_seen=presence.touch(db, user_id))


@app.get("/presence/online", response_model=OnlineUsersResponse)
async def online_users(user_id: CurrentUser, db: Session = Depends(get_db)) -> OnlineUsersResponse:
    return OnlineUsersResponse(
        user_ids=presence.online_user_ids(db),
        window_seconds=settings.PRESENCE_WINDOW_SECONDS,
    )


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post("/conversations", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    request: Request,
    body: ConversationCreateRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """
    Create a conversation owned by the caller, then add the caller and the
    requested participants. A failed participant insert leaves the
    conversation in place.
    """
    others = [pid for pid in dict.fromkeys(body.participant_ids) if pid != user_id]
    for pid in others:
        _require_profile(db, pid)

    conversation = repository.create_conversation(db, user_id, body.name, body.is_group)
    log_request_data(request, conversation_id=conversation.id)
    rows = repository.add_participants(db, user_id, conversation.id, [user_id] + others)
    _publish_participants(rows)
    return _conversation_response(db, user_id, conversation)


@app.post("/conversations/direct", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_direct_conversation(
    request: Request,
    body: DirectConversationRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """Start a one-to-one chat named after the peer."""
    if body.user_id == user_id:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="cannot start a chat with yourself")
    peer = _require_profile(db, body.user_id)

    peer_name = peer.display_name or peer.username or "user"
    conversation = repository.create_conversation(db, user_id, f"Chat with {peer_name}", is_group=False)
    log_request_data(request, conversation_id=conversation.id)
    rows = repository.add_participants(db, user_id, conversation.id, [user_id, peer.user_id])
    _publish_participants(rows)
    return _conversation_response(db, user_id, conversation)


@app.get("/conversations", response_model=list[ConversationResponse])
async def list_conversations(user_id: CurrentUser, db: Session = Depends(get_db)) -> list[ConversationResponse]:
    """List the caller's conversations. Loading the chat view counts as activity."""
    presence.touch(db, user_id)
    conversations = repository.list_conversations(db, user_id)
    return [_conversation_response(db, user_id, c) for c in conversations]


@app.get(
    "/conversations/{conversation_id}",
    response_model=ConversationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_conversation(conversation_id: str, user_id: CurrentUser, db: Session = Depends(get_db)) -> ConversationResponse:
    return _conversation_response(db, user_id, _require_conversation(db, user_id, conversation_id))


@app.get("/conversations/{conversation_id}/participants", response_model=list[ParticipantResponse])
async def list_participants(
    conversation_id: str, user_id: CurrentUser, db: Session = Depends(get_db)
) -> list[ParticipantResponse]:
    _require_conversation(db, user_id, conversation_id)
    return [ParticipantResponse.model_validate(p) for p in repository.list_participants(db, user_id, conversation_id)]


@app.post(
    "/conversations/{conversation_id}/participants",
    response_model=ParticipantResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        403: {"model": ErrorResponse, "description": "Only the creator may add others"},
        409: {"model": ErrorResponse, "description": "Already a participant"},
    },
)
async def add_participant(
    request: Request,
    conversation_id: str,
    body: ParticipantCreateRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ParticipantResponse:
    """Creator adds anyone; any user may add themself (join)."""
    if db.get(Conversation, conversation_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")
    _require_profile(db, body.user_id)

    row = repository.add_participant(db, user_id, conversation_id, body.user_id)
    log_request_data(request, conversation_id=conversation_id, participant_id=body.user_id, result="created")
    _publish_participants([row])
    return ParticipantResponse.model_validate(row)


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/conversations/{conversation_id}/messages", response_model=list[MessageResponse])
async def list_messages(conversation_id: str, user_id: CurrentUser, db: Session = Depends(get_db)) -> list[MessageResponse]:
    """
    Messages of a conversation, oldest first, each with its sender's display
    name and avatar.
    """
    _require_conversation(db, user_id, conversation_id)
    messages = repository.list_messages(db, user_id, conversation_id)
    profiles = {p.user_id: p for p in repository.get_profiles(db, (m.sender_id for m in messages))}
    logger.debug(f"Loaded {len(messages)} message(s) for {conversation_id}")
    return [_message_response(m, profiles) for m in messages]


@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse, "description": "Not a participant, or sender_id is not the caller"}},
)
async def send_message(
    request: Request,
    conversation_id: str,
    body: MessageCreateRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> MessageResponse:
    log_request_data(request, conversation_id=conversation_id)
    presence.touch(db, user_id)
    message = repository.create_message(
        db,
        user_id,
        conversation_id,
        sender_id=body.sender_id,
        content=body.content,
        message_type=MessageType.TEXT,
    )
    log_request_data(request, message_id=message.id, result="created")
    return _publish_message(db, message)


@app.post(
    "/conversations/{conversation_id}/images",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        413: {"model": ErrorResponse, "description": "Image too large"},
        415: {"model": ErrorResponse, "description": "Not an image"},
    },
)
async def send_image(
    request: Request,
    conversation_id: str,
    user_id: CurrentUser,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
) -> MessageResponse:
    """
    Upload an image into the private chat-images bucket and post it as an
    image message. Type and size are checked before anything is stored.
    """
    log_request_data(request, conversation_id=conversation_id)
    data = await file.read()
    validate_image(file.content_type, len(data))

    if not is_conversation_participant(db, conversation_id, user_id):
        raise PolicyViolation("messages", "INSERT", "sender is not a participant of this conversation")

    presence.touch(db, user_id)
    object_name = image_object_name(user_id, file.content_type)
    check_object_insert(user_id, CHAT_IMAGES_BUCKET, object_name)
    get_object_store().put(CHAT_IMAGES_BUCKET, object_name, data)

    message = repository.create_message(
        db,
        user_id,
        conversation_id,
        image_url=public_object_url(CHAT_IMAGES_BUCKET, object_name),
        message_type=MessageType.IMAGE,
    )
    log_request_data(request, message_id=message.id, object_name=object_name, result="created")
    return _publish_message(db, message)


# =============================================================================
# Object Storage Routes
# =============================================================================

@app.get("/storage/{bucket}/{object_name:path}", responses={404: {"model": ErrorResponse}})
async def read_object(
    bucket: str,
    object_name: str,
    user_id: Optional[str] = Depends(optional_user),
    db: Session = Depends(get_db),
) -> Response:
    """
    Read an object. Avatars are public; chat images only for participants of
    a conversation that contains them. Unreadable objects look missing.
    """
    if bucket not in BUCKETS or not can_read_object(db, user_id, bucket, object_name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="object not found")
    try:
        data, content_type = get_object_store().get(bucket, object_name)
    except ObjectNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="object not found")
    return Response(content=data, media_type=content_type, headers={"X-Content-Type-Options": "nosniff"})


# =============================================================================
# Call Routes
# =============================================================================

@app.post(
    "/conversations/{conversation_id}/calls",
    response_model=CallInviteResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_call(
    request: Request,
    conversation_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> CallInviteResponse:
    """
    Open a video room for a conversation: post a call notice message and ring
    every other participant on their calls channel. Callees without a live
    subscription are listed as missed; nothing is queued for them.
    """
    _require_conversation(db, user_id, conversation_id)
    url = calls.room_url(calls.generate_room_name())

    message = repository.create_message(
        db,
        user_id,
        conversation_id,
        content=calls.call_notice(url),
        message_type=MessageType.CALL,
    )
    message_response = _publish_message(db, message)

    callee_ids = [uid for uid in repository.participant_user_ids(db, conversation_id) if uid != user_id]
    invitation = calls.invitations.create(url, conversation_id, user_id, callee_ids)

    delivered_to, missed = [], []
    for callee_id in callee_ids:
        if feed.broadcast(calls_channel(callee_id), "call_invite", invitation.payload()):
            delivered_to.append(callee_id)
        else:
            missed.append(callee_id)

    log_request_data(request, conversation_id=conversation_id, invite_id=invitation.invite_id, result="ringing")
    logger.info(f"Call {invitation.invite_id} ringing: delivered={len(delivered_to)}, missed={len(missed)}")
    return CallInviteResponse(
        **invitation.payload(),
        message=message_response,
        delivered_to=delivered_to,
        missed=missed,
    )


@app.post(
    "/calls/{invite_id}/respond",
    response_model=CallRespondResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not invited"},
        404: {"model": ErrorResponse},
        410: {"model": ErrorResponse, "description": "Invitation expired"},
    },
)
async def respond_to_call(
    request: Request,
    invite_id: str,
    body: CallRespondRequest,
    user_id: CurrentUser,
) -> CallRespondResponse:
    """Accept or decline an invitation; the caller is told on their calls channel."""
    invitation = calls.invitations.get(invite_id)
    if invitation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="invitation not found")
    if user_id not in invitation.callee_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not invited to this call")
    if invitation.expired():
        raise HTTPException(status_code=status.HTTP_410_GONE, detail="invitation expired")

    invitation.responses[user_id] = body.accept
    feed.broadcast(
        calls_channel(invitation.caller_id),
        "call_response",
        {"invite_id": invite_id, "user_id": user_id, "accepted": body.accept},
    )
    log_request_data(request, invite_id=invite_id, result="accepted" if body.accept else "declined")
    return CallRespondResponse(
        invite_id=invite_id,
        accepted=body.accept,
        room_url=invitation.room_url if body.accept else None,
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())

import asyncio
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from starlette.responses import JSONResponse

from nostr_identity import keycast, migration
from nostr_identity.bunker import (
    BunkerSession,
    create_nostrconnect_uri,
    login_with_bunker,
)
from nostr_identity.config import CORS_ORIGINS, NOSTRCONNECT_RELAY, RELAY_URLS, ensure_directories
from nostr_identity.database import close_db, get_db
from nostr_identity.errors import (
    ConnectionTimeout,
    DecryptionFailed,
    EncryptionUnsupported,
    InvalidKeyFormat,
    KeycastError,
    MigrationProofIncomplete,
    PlaintextTooLarge,
    NoIdentity,
    NostrIdentityError,
    PublishFailed,
    RemoteIdentityMismatch,
    SigningRejected,
    SigningUnavailable,
)
from nostr_identity.groups import join_group, leave_group, list_groups
from nostr_identity.identity import IdentityStore
from nostr_identity.keys import generate_secret_key, parse_public_key, parse_secret_key
from nostr_identity.models import LocalIdentity
from nostr_identity.push import PushService, TopicFilter
from nostr_identity.refresh import start_refresh_task, stop_refresh_task
from nostr_identity.relay import RelayPool

logger = logging.getLogger(__name__)


class ImportRequest(BaseModel):
    secret: str

class ExportRequest(BaseModel):
    password: str

class NostrConnectStart(BaseModel):
    relay: str | None = None

class BunkerConnect(BaseModel):
    uri: str

class KeycastLogin(BaseModel):
    email: str
    password: str
    create: bool = False
    nsec: str | None = None

class MigrationRequest(BaseModel):
    secret: str | None = None
    groups: list[str] | None = None

class DeviceRegistration(BaseModel):
    token: str

class TopicSubscription(BaseModel):
    mention: str | None = None


app = FastAPI(title="Nostr Identity", version="1.0.0")

# --------------------------------------------
# CORS
# --------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --------------------------------------------
# Error mapping
# --------------------------------------------
_STATUS = (
    (InvalidKeyFormat, 400),
    (DecryptionFailed, 400),
    (NoIdentity, 404),
    (SigningRejected, 403),
    (RemoteIdentityMismatch, 409),
    (EncryptionUnsupported, 422),
    (MigrationProofIncomplete, 422),
    (PlaintextTooLarge, 413),
    (ConnectionTimeout, 504),
    (SigningUnavailable, 503),
    (PublishFailed, 503),
)


@app.exception_handler(NostrIdentityError)
async def identity_error_handler(request: Request, exc: NostrIdentityError):
    status = 500
    if isinstance(exc, KeycastError):
        status = exc.status_code if exc.status_code and 400 <= exc.status_code < 500 else 502
    else:
        for cls, code in _STATUS:
            if isinstance(exc, cls):
                status = code
                break
    logger.warning("%s %s -> %d %s: %s", request.method, request.url.path, status, type(exc).__name__, exc)
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})


# --------------------------------------------
# Process-wide state
# --------------------------------------------
_store: IdentityStore | None = None
_transport = None
_push: PushService | None = None
_refresh_task = None
_pending_connect: dict | None = None


def create_transport():
    return RelayPool(RELAY_URLS)


def get_store() -> IdentityStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="service not started")
    return _store


@app.on_event("startup")
async def startup():
    global _store, _transport, _push, _refresh_task
    ensure_directories()
    get_db()

    _transport = create_transport()
    _store = IdentityStore(transport=_transport)
    identity = await _store.load()
    _push = PushService(_store, _transport)

    logger.info("Identity service ready: %s identity %s", identity.type, identity.npub)
    _refresh_task = start_refresh_task(_push)


@app.on_event("shutdown")
async def shutdown():
    global _refresh_task
    await stop_refresh_task(_refresh_task)
    _refresh_task = None
    if _pending_connect is not None:
        await _cancel_pending_connect()
    if _store is not None and _store.bunker_session is not None:
        await _store.bunker_session.close()
    if _transport is not None and hasattr(_transport, "close"):
        await _transport.close()
    close_db()


# ---------------------------------------------------------
# HEALTH CHECK
# ---------------------------------------------------------
@app.get("/health")
def health_check():
    checks = {"database": False, "identity": False}

    try:
        db = get_db()
        db.execute("SELECT 1").fetchone()
        checks["database"] = True
    except Exception as e:
        logger.error("Health check DB failed: %s", e)

    checks["identity"] = _store is not None and _store.current is not None

    all_ok = all(checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "healthy" if all_ok else "degraded", "checks": checks},
    )


# ---------------------------------------------------------
# IDENTITY
# ---------------------------------------------------------
@app.get("/identity")
def current_identity():
    return get_store().require_current().public_view()


@app.post("/identity/new")
async def new_identity():
    identity = await get_store().create_local()
    return identity.public_view()


@app.post("/identity/import")
async def import_identity(req: ImportRequest):
    identity = await get_store().import_secret(req.secret)
    return identity.public_view()


@app.post("/identity/backup")
async def backup_identity():
    nsec = await get_store().copy_secret()
    return {"nsec": nsec}


@app.post("/identity/export")
async def export_identity(req: ExportRequest):
    if not req.password:
        raise HTTPException(status_code=400, detail="password required")
    return {"ncryptsec": await get_store().export_secret(req.password)}


@app.post("/identity/logout")
async def logout():
    await get_store().logout()
    return {"status": "ok", "action": "logout"}


# ---------------------------------------------------------
# BUNKER (NIP-46)
# ---------------------------------------------------------
async def _run_nostrconnect(session: BunkerSession, connect_request):
    try:
        await session.wait_for_connection(connect_request)
        await get_store().adopt_bunker_session(session)
    except NostrIdentityError as exc:
        logger.warning("nostrconnect flow ended: %s", exc)


@app.post("/bunker/nostrconnect")
async def start_nostrconnect(req: NostrConnectStart):
    global _pending_connect
    if _pending_connect is not None:
        await _cancel_pending_connect()

    connect_request = create_nostrconnect_uri(req.relay or NOSTRCONNECT_RELAY)
    session = BunkerSession(_transport, (connect_request.relay,), client_secret=connect_request.client_secret_key)
    task = asyncio.create_task(_run_nostrconnect(session, connect_request), name="nostrconnect")
    _pending_connect = {"session": session, "task": task}
    return {"uri": connect_request.uri, "client_public_key": connect_request.client_public_key}


async def _cancel_pending_connect():
    global _pending_connect
    pending, _pending_connect = _pending_connect, None
    if pending["task"].done():
        return
    pending["task"].cancel()
    try:
        await pending["task"]
    except asyncio.CancelledError:
        pass


@app.post("/bunker/connect")
async def connect_bunker(req: BunkerConnect):
    if _pending_connect is not None:
        await _cancel_pending_connect()
    store = get_store()
    session = await login_with_bunker(store, _transport, req.uri)
    return {"session": session.snapshot(), "identity": store.require_current().public_view()}


@app.get("/bunker/session")
def bunker_session():
    session = _pending_connect["session"] if _pending_connect else get_store().bunker_session
    if session is None:
        raise HTTPException(status_code=404, detail="no bunker session")
    return session.snapshot()


@app.post("/bunker/authorized")
async def bunker_authorized():
    session = _pending_connect["session"] if _pending_connect else get_store().bunker_session
    if session is None:
        raise HTTPException(status_code=404, detail="no bunker session")
    await session.authorization_completed()
    return session.snapshot()


# ---------------------------------------------------------
# KEYCAST
# ---------------------------------------------------------
@app.post("/keycast/login")
async def keycast_login(req: KeycastLogin):
    store = get_store()
    session = await keycast.login_with_keycast(
        store, _transport, req.email, req.password, create=req.create, nsec=req.nsec
    )
    return {"session": session.snapshot(), "identity": store.require_current().public_view()}


# ---------------------------------------------------------
# GROUPS
# ---------------------------------------------------------
@app.get("/groups")
def groups():
    return {"groups": list_groups(get_store().require_current().public_key)}


@app.post("/groups/{group_id}/join")
def join(group_id: str):
    public_key = get_store().require_current().public_key
    join_group(public_key, group_id)
    return {"status": "ok", "action": "join", "group_id": group_id}


@app.delete("/groups/{group_id}")
def leave(group_id: str):
    public_key = get_store().require_current().public_key
    leave_group(public_key, group_id)
    return {"status": "ok", "action": "leave", "group_id": group_id}


# ---------------------------------------------------------
# MIGRATION
# ---------------------------------------------------------
@app.post("/migration")
async def migrate(req: MigrationRequest):
    store = get_store()
    secret = parse_secret_key(req.secret) if req.secret else generate_secret_key()
    new_identity = LocalIdentity.from_secret(secret, has_backed_up_secret=bool(req.secret))

    result = await migration.migrate(store, _transport, new_identity, group_ids=req.groups)
    return {
        "old_public_key": result.old_public_key,
        "new_public_key": result.new_public_key,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "committed": result.committed,
    }


@app.get("/migration/pending")
def pending_migration():
    return {"pending": migration.get_pending_migration()}


@app.post("/migration/fetch/{group_id}")
async def fetch_migrations(group_id: str):
    stored = await migration.fetch_group_migrations(_transport, group_id)
    return {"group_id": group_id, "stored": stored}


@app.get("/migration/resolve/{pubkey}")
def resolve(pubkey: str):
    pubkey = parse_public_key(pubkey)
    return {
        "public_key": pubkey,
        "resolved": migration.resolve(pubkey),
        "history": migration.history(pubkey),
        "has_migrated": migration.has_migrated(pubkey),
    }


# ---------------------------------------------------------
# PUSH
# ---------------------------------------------------------
@app.post("/push/device")
async def register_device(req: DeviceRegistration):
    await _push.register_device(req.token)
    return _push.get_state()


@app.delete("/push/device")
async def deregister_device():
    await _push.deregister_device()
    return _push.get_state()


@app.post("/push/topics/{topic_id}")
async def subscribe_topic(topic_id: str, req: TopicSubscription | None = None):
    mention = parse_public_key(req.mention) if req and req.mention else None
    filter_hash = await _push.subscribe_topic(topic_id, TopicFilter.for_topic(topic_id, mention))
    return {"topic_id": topic_id, "filter_hash": filter_hash}


@app.delete("/push/topics/{topic_id}")
async def unsubscribe_topic(topic_id: str):
    await _push.unsubscribe_topic(topic_id)
    return {"status": "ok", "action": "unsubscribe", "topic_id": topic_id}


@app.get("/push/state")
def push_state():
    return _push.get_state()

"""
FastAPI entry points for the message router.

    POST /v1/actions   JSON body with an ``action`` field, see actions.Action
    POST /v1/inbound   message arrival from the mail edge
    POST /v1/sweep     scheduled drain of the fallback mailbox
    GET  /v1/health    KV connectivity

Domain errors map to HTTP status codes in ``_raise_http``; the response
detail always carries the error type and, where one exists, its reason.
"""

import email
import email.policy
import hmac
import json
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Optional

import redis.asyncio
from fastapi import Body, FastAPI, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from Mail_Router.mr_shared import errors
from Mail_Router.mr_shared.counters import MemoryCounterStore, RateLimiter, RedisCounterStore, TokenCache
from Mail_Router.mr_shared.crypto_engine import EciesEngine
from Mail_Router.mr_shared.types import InboundMessage
from Mail_Router.mr_db import connection
from Mail_Router.mr_db.audit_log import AuditLog
from Mail_Router.mr_db.blind_inbox import BlindInbox
from Mail_Router.mr_db.calendar import CalendarStore
from Mail_Router.mr_db.identity_registry import IdentityRegistry
from Mail_Router.mr_db.key_registry import KeyRegistry
from Mail_Router.mr_db.payment_ledger import PaymentLedger
from Mail_Router.mr_db.privacy import PrivacyStore
from Mail_Router.mr_db.status import StatusReporter
from Mail_Router.mr_db.tier_ledger import TierLedger
from Mail_Router.mr_server import config
from Mail_Router.mr_server.actions import Dispatcher, Services
from Mail_Router.mr_server.chain_oracle import ChainOracle, OwnershipOracle, RpcOwnershipOracle
from Mail_Router.mr_server.logging_config import configure_logging
from Mail_Router.mr_server.mail_provider import MailProvider, ZohoMailProvider
from Mail_Router.mr_server.payment_gate import PaymentGate
from Mail_Router.mr_server.pinning import PinataPinner, Pinner
from Mail_Router.mr_server.router import MessageRouter
from Mail_Router.mr_server.sweep import SweepJob


# ── Pydantic request/response models ──


class InboundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str
    sender: str = Field(default="", alias="from")
    subject: Optional[str] = None
    body: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    raw: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    kv_connected: bool
    key_count: int


# ── Runtime wiring ──


@dataclass
class Runtime:
    client: redis.asyncio.Redis
    dispatcher: Dispatcher
    router: MessageRouter
    sweep: Optional[SweepJob]
    secret: str


def build_runtime(
    client: redis.asyncio.Redis,
    chain: Optional[ChainOracle] = None,
    ownership: Optional[OwnershipOracle] = None,
    provider: Optional[MailProvider] = None,
    pinner: Optional[Pinner] = None,
    secret: str = config.ROUTER_SECRET,
    recovery_public_key: str = config.RECOVERY_PUBLIC_KEY,
    durable_rate_limits: bool = config.DURABLE_RATE_LIMITS,
) -> Runtime:
    chain = chain or ChainOracle(config.CHAIN_RPC_URL, timeout=config.CHAIN_TIMEOUT_SECONDS)
    ownership = ownership or RpcOwnershipOracle(chain)
    counter_store = RedisCounterStore(client) if durable_rate_limits else MemoryCounterStore()

    engine = EciesEngine()
    inbox = BlindInbox(client)
    audit = AuditLog(client)
    tiers = TierLedger(client)
    privacy = PrivacyStore(client)
    payments = PaymentLedger(client)
    keys = KeyRegistry(client)
    identities = IdentityRegistry(client, tiers, audit, privacy)
    calendar = CalendarStore(client)

    router = MessageRouter(
        inbox=inbox,
        keys=keys,
        tiers=tiers,
        privacy=privacy,
        audit=audit,
        engine=engine,
        ownership=ownership,
        provider=provider,
        direct_limiter=RateLimiter(
            counter_store,
            "direct-message",
            config.DIRECT_MESSAGE_LIMIT,
            config.DIRECT_MESSAGE_WINDOW_SECONDS,
        ),
        recovery_public_key=recovery_public_key,
    )
    gate = PaymentGate(
        ledger=payments,
        chain=chain,
        tiers=tiers,
        inbox=inbox,
        privacy=privacy,
        treasury=config.TREASURY_ADDRESS,
        token_contract=config.TOKEN_CONTRACT,
    )
    services = Services(
        inbox=inbox,
        audit=audit,
        tiers=tiers,
        privacy=privacy,
        payments=payments,
        keys=keys,
        identities=identities,
        calendar=calendar,
        status=StatusReporter(inbox, tiers, calendar),
        gate=gate,
        router=router,
        engine=engine,
        ownership=ownership,
        pinner=pinner,
        router_secret=secret,
    )
    sweep = None
    if provider is not None:
        sweep = SweepJob(
            client,
            provider,
            router,
            batch_size=config.SWEEP_BATCH_SIZE,
            lock_seconds=config.SWEEP_LOCK_SECONDS,
            seen_ttl_seconds=config.SWEEP_SEEN_TTL_SECONDS,
        )
    return Runtime(client=client, dispatcher=Dispatcher(services), router=router, sweep=sweep, secret=secret)


def default_provider() -> Optional[MailProvider]:
    if not config.PROVIDER_ACCOUNT_ID or not config.PROVIDER_REFRESH_TOKEN:
        return None
    return ZohoMailProvider(
        api_url=config.PROVIDER_API_URL,
        token_url=config.PROVIDER_TOKEN_URL,
        account_id=config.PROVIDER_ACCOUNT_ID,
        client_id=config.PROVIDER_CLIENT_ID,
        client_secret=config.PROVIDER_CLIENT_SECRET,
        refresh_token=config.PROVIDER_REFRESH_TOKEN,
        token_cache=TokenCache(MemoryCounterStore(), "provider"),
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
    )


runtime: Optional[Runtime] = None


def install(rt: Optional[Runtime]) -> None:
    global runtime
    runtime = rt


def _get_runtime() -> Runtime:
    if runtime is None:
        raise HTTPException(status_code=503, detail="Router not initialized")
    return runtime


# ── App lifecycle ──


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(config.LOG_LEVEL, config.LOG_JSON)
    if runtime is None:
        client = await connection.create_client(config.REDIS_URL, config.REDIS_SOCKET_TIMEOUT)
        pinner = PinataPinner(config.PINNING_API_URL, config.PINNING_JWT, timeout=config.PINNING_TIMEOUT_SECONDS)
        install(build_runtime(client, provider=default_provider(), pinner=pinner))
    yield
    await connection.close_client()


app = FastAPI(title="Mail Router", version="1.0.0", lifespan=lifespan)


# ── Error mapping ──

STATUS_CODES = [
    (errors.RejectedAddressError, 400),
    (errors.UnknownActionError, 400),
    (errors.InvalidKeyError, 400),
    (errors.InvalidTierError, 400),
    (errors.InvalidPrivacyStateError, 400),
    (errors.InvalidEventError, 400),
    (errors.UpgradeDeniedError, 402),
    (errors.AuthRequiredError, 403),
    (errors.CapabilityDeniedError, 403),
    (errors.PrivacyLockedError, 403),
    (errors.EnvelopeNotFoundError, 404),
    (errors.IdentityNotFoundError, 404),
    (errors.IdentityTakenError, 409),
    (errors.PaymentAlreadyUsedError, 409),
    (errors.AlreadyMoltedError, 409),
    (errors.DowngradeNotAllowedError, 409),
    (errors.IntegrityFailureError, 422),
    (errors.RateLimitedError, 429),
    (errors.StoreUnavailableError, 503),
]


def _raise_http(e: errors.MailRouterError):
    status = next((code for cls, code in STATUS_CODES if isinstance(e, cls)), 500)
    detail = {"error": type(e).__name__, "message": str(e)}
    reason = getattr(e, "reason", None)
    if reason:
        detail["reason"] = reason
    raise HTTPException(status_code=status, detail=detail)


def _require_secret(rt: Runtime, presented: Optional[str]) -> None:
    if not rt.secret or not presented or not hmac.compare_digest(presented.encode(), rt.secret.encode()):
        raise HTTPException(status_code=403, detail={"error": "AuthRequiredError", "message": "router secret required"})


def _parse_inbound(req: InboundRequest) -> InboundMessage:
    subject, body, sender = req.subject, req.body, req.sender
    if req.raw is not None:
        parsed = email.message_from_string(req.raw, policy=email.policy.default)
        if subject is None:
            subject = str(parsed.get("subject", ""))
        if not sender:
            sender = str(parsed.get("from", ""))
        if body is None:
            part = parsed.get_body(preferencelist=("plain", "html"))
            body = part.get_content() if part is not None else ""
    return InboundMessage(
        sender=sender,
        recipient=req.to,
        subject=subject or "",
        body=body or "",
        headers=req.headers,
    )


# ── Endpoints ──


@app.post("/v1/actions")
async def dispatch_action(
    payload: dict = Body(...),
    x_router_secret: Optional[str] = Header(default=None),
):
    rt = _get_runtime()
    try:
        return await rt.dispatcher.dispatch(payload, x_router_secret)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json(include_url=False)))
    except errors.MailRouterError as e:
        _raise_http(e)


@app.post("/v1/inbound")
async def inbound(req: InboundRequest, x_router_secret: Optional[str] = Header(default=None)):
    rt = _get_runtime()
    _require_secret(rt, x_router_secret)
    try:
        receipt = await rt.router.handle_inbound(_parse_inbound(req))
    except errors.MailRouterError as e:
        _raise_http(e)
    return asdict(receipt)


@app.post("/v1/sweep")
async def sweep(x_router_secret: Optional[str] = Header(default=None)):
    rt = _get_runtime()
    _require_secret(rt, x_router_secret)
    if rt.sweep is None:
        raise HTTPException(status_code=503, detail="Fallback provider not configured")
    try:
        report = await rt.sweep.run()
    except errors.MailRouterError as e:
        _raise_http(e)
    return asdict(report)


@app.get("/v1/health", response_model=HealthResponse)
async def health():
    rt = runtime
    status = await connection.health_check(rt.client if rt else None)
    return HealthResponse(
        status="ok" if status.kv_connected else "degraded",
        kv_connected=status.kv_connected,
        key_count=status.key_count,
    )

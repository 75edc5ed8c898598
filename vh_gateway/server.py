"""
VanderHub Gateway Server

FastAPI front for protected script delivery.

Request path for GET /raw/{repo}/{file}:
- firewall (banned IPs, bot-path traps) and per-IP rate limit
- admission filter (identity, debug tools, device id, shared key, entitlement)
- repository lookup
- transform pipeline for executable scripts, raw content otherwise

Denials are served as Lua comments with the status the executor expects;
store and validation failures use the JSON error envelope.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from . import metrics
from .admission import AdmissionFilter, CallerContext
from .config import GatewayConfig
from .entitlements import EntitlementRecord, EntitlementStore
from .errors import VH_E_NOT_FOUND, VHError
from .firewall import Firewall
from .identity import IdentityClassifier, SignatureListClassifier
from .lockdown import DbCircuitBreaker
from .mirror import LocalMirror
from .ops_stats import OPS_STATS
from .ratelimit import RateLimiter, parse_rate_limit
from .repos import RepositoryStore
from .session_key import RotatingSessionKey
from .transform import TransformPipeline

logger = logging.getLogger("vh_gateway")

TEXT_PLAIN = "text/plain; charset=utf-8"
PROTECTION_HEADER = "X-VH-Protection"

MSG_REPO_NOT_FOUND = "-- REPO NOT FOUND"
MSG_FILE_NOT_FOUND = "-- FILE NOT FOUND"
MSG_RATE_LIMITED = "-- RATE LIMITED"


def is_script_name(name: str) -> bool:
    """Extension-less and ``.lua`` names are executable scripts."""
    return name.lower().endswith(".lua") or "." not in name


@dataclass(frozen=True)
class ServeResult:
    status: int
    body: str
    content_type: str = TEXT_PLAIN
    headers: Dict[str, str] = field(default_factory=dict)


def _iso(record: EntitlementRecord) -> Optional[str]:
    return record.expires_at.isoformat() if record.expires_at else None


class VHGateway:
    """Orchestrates admission, content lookup and protection."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        entitlements: Optional[EntitlementStore] = None,
        repos: Optional[RepositoryStore] = None,
        classifier: Optional[IdentityClassifier] = None,
        pipeline: Optional[TransformPipeline] = None,
        session_keys: Optional[RotatingSessionKey] = None,
        clock=None,
    ):
        self.config = cfg = config or GatewayConfig.from_env()
        self.circuit = entitlements.circuit if entitlements is not None else DbCircuitBreaker()
        self.mirror = (entitlements.mirror if entitlements is not None else None) or LocalMirror(cfg.resolved_mirror_path)
        self.entitlements = entitlements or EntitlementStore(
            cfg.db_path,
            mirror=self.mirror,
            circuit=self.circuit,
            clock=clock,
            entitlement_days=cfg.entitlement_days,
        ).open()
        self.repos = repos or RepositoryStore(cfg.db_path, mirror=self.mirror, circuit=self.circuit).open()
        self.session_keys = session_keys or RotatingSessionKey(cfg.session_secret, cfg.session_bucket_seconds)
        self.pipeline = pipeline or TransformPipeline.for_tier(
            cfg.protection_tier,
            session_key_delivery=cfg.session_key_delivery,
            session_keys=self.session_keys,
            chunk_size=cfg.chunk_size,
            filler_count=cfg.filler_count,
        )
        self.admission = AdmissionFilter(
            classifier or SignatureListClassifier(),
            self.entitlements,
            raw_key=cfg.raw_key,
            admin_device_ids=cfg.admin_device_ids,
            renew_url=cfg.renew_url,
            clock=clock,
        )

    def _handshake_url(self, caller: CallerContext) -> str:
        query = urlencode({"key": caller.shared_key or "", "hwid": caller.device_id or ""})
        return f"{self.config.public_url}/v1/handshake?{query}"

    async def serve(self, repo_id: str, file_name: str, caller: CallerContext) -> ServeResult:
        decision = self.admission.evaluate(caller)
        if not decision.allowed:
            return ServeResult(status=decision.status, body=decision.body)

        try:
            f = self.repos.get_file(repo_id, file_name)
        except VHError as e:
            if e.code != VH_E_NOT_FOUND:
                raise
            OPS_STATS.record_not_found()
            body = MSG_REPO_NOT_FOUND if e.details.get("what") == "repo" else MSG_FILE_NOT_FOUND
            return ServeResult(status=404, body=body)

        if is_script_name(file_name) and f.content:
            handshake_url = self._handshake_url(caller) if self.pipeline.needs_handshake_url else None
            body = await asyncio.to_thread(self.pipeline.protect, f.content, caller.device_id or "", handshake_url)
            OPS_STATS.record_transform(self.pipeline.tier)
            metrics.record_transform(self.pipeline.tier)
            return ServeResult(status=200, body=body, headers={PROTECTION_HEADER: self.pipeline.tier})

        OPS_STATS.record_raw_served()
        return ServeResult(status=200, body=f.content, headers={PROTECTION_HEADER: "none"})

    async def verify_key(self, key: str, device_id: str) -> Dict[str, Any]:
        record = self.entitlements.redeem(key, device_id)
        logger.info("Key redeemed (%s)", record.kind.value)
        return {"success": True, "expiresAt": _iso(record), "kind": record.kind.value}

    async def claim_trial(self, device_id: str) -> Dict[str, Any]:
        record = self.entitlements.claim_trial(device_id)
        return {"success": True, "key": record.linked_credential_id, "expiresAt": _iso(record)}

    async def handshake(self, caller: CallerContext) -> ServeResult:
        """Current session key for callers that pass admission."""
        decision = self.admission.evaluate(caller)
        if not decision.allowed:
            return ServeResult(status=decision.status, body=decision.body)
        return ServeResult(status=200, body=self.session_keys.current_key())


# ---------------------------
# API models
# ---------------------------

class VerifyKeyRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=128)
    hwid: str = Field(..., min_length=1, max_length=256)


class VerifyKeyResponse(BaseModel):
    success: bool
    expiresAt: Optional[str] = None
    kind: str


class ClaimTrialRequest(BaseModel):
    hwid: str = Field(..., min_length=1, max_length=256)


class ClaimTrialResponse(BaseModel):
    success: bool
    key: str
    expiresAt: Optional[str] = None


def _client_ip(req: Request) -> Optional[str]:
    # With --proxy-headers uvicorn has already resolved X-Forwarded-For.
    if req.client and req.client.host:
        return req.client.host
    return None


def _plain(result: ServeResult) -> PlainTextResponse:
    return PlainTextResponse(
        result.body, status_code=result.status, headers=result.headers, media_type=result.content_type
    )


def create_app(gateway: Optional[VHGateway] = None, firewall: Optional[Firewall] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as vh_version

    app = FastAPI(
        title="VanderHub Gateway",
        description="Protected Lua script delivery",
        version=vh_version,
    )

    @app.exception_handler(VHError)
    async def _vh_error_handler(request: Request, exc: VHError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    if gateway is None:
        gateway = VHGateway()
    app.state.gateway = gateway
    cfg = gateway.config

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("VH_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    metrics.instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Hardening: request size, firewall, rate limiting
    # ---------------------------
    try:
        max_request_bytes = int(os.getenv("VH_MAX_REQUEST_BYTES", "65536") or "65536")
    except ValueError:
        max_request_bytes = 65536

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                # If malformed, fail-closed.
                return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
            if too_large:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})
        return await call_next(req)

    if firewall is None and (os.getenv("VH_FIREWALL_ENABLED", "1") or "").strip().lower() in ("1", "true", "yes", "on"):
        firewall = Firewall.from_env()
    if firewall is not None:
        firewall.install(app, _client_ip)
    app.state.firewall = firewall

    def _build_limiter(env_name: str, default_spec: str) -> Optional[RateLimiter]:
        spec = os.getenv(env_name, default_spec).strip()
        if not spec or spec in ("0", "off", "disabled", "false"):
            return None
        try:
            cap, refill = parse_rate_limit(spec)
            max_keys = int(os.getenv("VH_RATE_LIMIT_MAX_KEYS", "20000") or "20000")
            return RateLimiter(capacity=cap, refill_rate_per_sec=refill, max_keys=max_keys)
        except ValueError as e:
            logger.warning("Invalid rate limit %s=%r: %s (disabled)", env_name, spec, e)
            return None

    raw_limiter = _build_limiter("VH_RATE_LIMIT_RAW", "60/m")
    api_limiter = _build_limiter("VH_RATE_LIMIT_API", "20/m")

    def _rate_limited(limiter: Optional[RateLimiter], req: Request, endpoint: str) -> Optional[Dict[str, str]]:
        """Return Retry-After headers if the caller is over budget, else None."""
        key = f"ip:{_client_ip(req) or '_anon'}"
        if limiter is None or limiter.allow(key):
            return None
        OPS_STATS.record_rate_limited()
        metrics.record_rate_limited(endpoint)
        return {"Retry-After": str(max(1, limiter.retry_after(key)))}

    def _too_many(headers: Dict[str, str]) -> PlainTextResponse:
        return PlainTextResponse(MSG_RATE_LIMITED, status_code=429, media_type=TEXT_PLAIN, headers=headers)

    def _caller(req: Request, user_agent: Optional[str], key: Optional[str], hwid: Optional[str]) -> CallerContext:
        return CallerContext(identity=user_agent or "", device_id=hwid, shared_key=key, client_ip=_client_ip(req))

    # ---------------------------
    # Routes
    # ---------------------------

    @app.get("/raw/{repo_id}/{file_name}")
    async def raw(
        http_request: Request,
        repo_id: str,
        file_name: str,
        key: Optional[str] = Query(None),
        hwid: Optional[str] = Query(None),
        user_agent: Optional[str] = Header(None, alias="User-Agent"),
    ):
        limited = _rate_limited(raw_limiter, http_request, "raw")
        if limited:
            return _too_many(limited)
        result = await gateway.serve(repo_id, file_name, _caller(http_request, user_agent, key, hwid))
        return _plain(result)

    @app.post("/api/verify-key", response_model=VerifyKeyResponse)
    async def verify_key(http_request: Request, request: VerifyKeyRequest):
        """Redeem an access key for a device."""
        limited = _rate_limited(api_limiter, http_request, "verify_key")
        if limited:
            raise HTTPException(429, "RATE_LIMITED", headers=limited)
        return await gateway.verify_key(request.key, request.hwid)

    @app.post("/api/claim-trial", response_model=ClaimTrialResponse)
    async def claim_trial(http_request: Request, request: ClaimTrialRequest):
        """Issue (or return) the one trial key a device is allowed."""
        limited = _rate_limited(api_limiter, http_request, "claim_trial")
        if limited:
            raise HTTPException(429, "RATE_LIMITED", headers=limited)
        return await gateway.claim_trial(request.hwid)

    if gateway.pipeline.needs_handshake_url:
        @app.get("/v1/handshake")
        async def handshake(
            http_request: Request,
            key: Optional[str] = Query(None),
            hwid: Optional[str] = Query(None),
            user_agent: Optional[str] = Header(None, alias="User-Agent"),
        ):
            limited = _rate_limited(raw_limiter, http_request, "handshake")
            if limited:
                return _too_many(limited)
            result = await gateway.handshake(_caller(http_request, user_agent, key, hwid))
            return _plain(result)

    stats_token = (os.getenv("VH_STATS_TOKEN", "") or "").strip()
    env = str(os.getenv("VH_ENV", os.getenv("ENV", "dev"))).strip().lower()
    raw_require = os.getenv("VH_STATS_REQUIRE_AUTH")
    if raw_require is None:
        stats_require_auth = env in ("prod", "production")
    else:
        stats_require_auth = str(raw_require).strip().lower() in ("1", "true", "yes", "on")

    def _authorize_stats(req: Request) -> bool:
        # If auth is required but no token is configured, deny (fail closed).
        if not stats_token:
            return False
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == stats_token:
            return True
        return (req.headers.get("X-Stats-Token") or "").strip() == stats_token

    @app.get("/v1/stats")
    async def stats(http_request: Request):
        if stats_require_auth and not _authorize_stats(http_request):
            raise HTTPException(401, "STATS_UNAUTHORIZED")
        lockdown = gateway.circuit.is_lockdown_active()
        metrics.set_lockdown_active(lockdown)
        return OPS_STATS.snapshot(extra={
            "lockdown_active": lockdown,
            "lockdown_remaining_seconds": round(gateway.circuit.remaining_seconds(), 1),
            "entitlement_store": gateway.entitlements.state.value,
            "repository_store": gateway.repos.state.value,
            "mirror_pending": len(gateway.mirror.pending()),
            "firewall_banned": len(firewall.banned) if firewall is not None else 0,
        })

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "protection_tier": gateway.pipeline.tier,
            "session_key_delivery": cfg.session_key_delivery,
            "entitlement_store": gateway.entitlements.state.value,
            "repository_store": gateway.repos.state.value,
        }

    return app


def main():
    """
    Main entry point for the vh-gateway command.

    Usage:
        vh-gateway                    # Start on default port 8000
        vh-gateway --port 9000        # Start on custom port
        vh-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="VanderHub Gateway - protected script delivery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    vh-gateway                          Start gateway on 0.0.0.0:8000
    vh-gateway --port 9000              Start on custom port
    vh-gateway --host 127.0.0.1         Bind to localhost only

Environment Variables:
    VH_GATEWAY_DB_PATH       Path to SQLite database (default: vanderhub_gateway.db)
    VH_RAW_KEY               Shared key required on /raw fetches
    VH_PROTECTION_TIER       standard | device | labyrinth
    VH_SESSION_KEY_DELIVERY  embedded | handshake
    VH_RATE_LIMIT_RAW        Per-IP limit on /raw (default: 60/m)
    VH_PROXY_HEADERS         If set (1/true), trust X-Forwarded-* headers (reverse proxy)
    VH_FORWARDED_ALLOW_IPS   Comma-separated IPs allowed to set X-Forwarded-* (default: uvicorn)
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    parser.add_argument("--forwarded-allow-ips", default=None, help="Comma-separated IPs allowed to set X-Forwarded-*")

    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    app = create_app()
    gateway: VHGateway = app.state.gateway

    print(f"Starting VanderHub Gateway on {args.host}:{args.port}")
    print(f"  Protection tier: {gateway.pipeline.tier}")
    print(f"  Endpoints:")
    print(f"    GET  /raw/{{repo}}/{{file}}     - Protected script fetch")
    print(f"    POST /api/verify-key        - Redeem an access key")
    print(f"    POST /api/claim-trial       - Claim a trial key")
    if gateway.pipeline.needs_handshake_url:
        print(f"    GET  /v1/handshake          - Current session key")
    print(f"    GET  /v1/health             - Health check")
    print()

    env_proxy = os.environ.get("VH_PROXY_HEADERS", "").strip().lower()
    proxy_headers = args.proxy_headers or (env_proxy in ("1", "true", "yes"))
    forwarded_allow_ips = args.forwarded_allow_ips or os.environ.get("VH_FORWARDED_ALLOW_IPS")

    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=proxy_headers, forwarded_allow_ips=forwarded_allow_ips)
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException

from .config import Config
from .jobs import row_to_dict

logger = logging.getLogger(__name__)


def generate_operator_token(operator: str, ttl_minutes: int = 60) -> str:
    payload = {
        "op": operator,
        "exp": int(time.time()) + ttl_minutes * 60,
        "nonce": secrets.token_hex(8),
    }
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    sig = hmac.new(Config.OPERATOR_TOKEN_SECRET.encode(), body.encode(), hashlib.sha256).hexdigest()
    return base64.urlsafe_b64encode(body.encode()).decode() + "." + sig


def verify_operator_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    try:
        body_b64, sig = token.split(".", 1)
        body = base64.urlsafe_b64decode(body_b64.encode()).decode()
        expected = hmac.new(Config.OPERATOR_TOKEN_SECRET.encode(), body.encode(), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, sig):
            return None
        payload = json.loads(body)
        if payload["exp"] < time.time():
            return None
        return payload
    except (ValueError, KeyError, TypeError, binascii.Error):
        return None


def create_api(service) -> FastAPI:
    api_app = FastAPI(title="Deposit Settlement API", version="0.1")

    def require_operator(token: Optional[str]) -> Dict[str, Any]:
        payload = verify_operator_token(token)
        if not payload:
            raise HTTPException(401, "Invalid operator token")
        return payload

    @api_app.get("/api/health")
    def api_health():
        queue = service.queue
        return {
            "status": "ok",
            "time": datetime.now(timezone.utc).isoformat(),
            "chains": sorted(service.clients),
            "watched": len(service.watched),
            "running": queue.running if queue else 0,
            "pending": queue.pending if queue else 0,
        }

    @api_app.get("/api/deposits/stuck")
    def api_stuck():
        return {"deposits": [row_to_dict(row) for row in service.store.stuck()]}

    @api_app.post("/api/deposits/{key}/retry")
    async def api_retry(key: str, x_operator_token: Optional[str] = Header(None)):
        operator = require_operator(x_operator_token)
        job = service.redrive(key)
        if job is None:
            raise HTTPException(404, "No failed or stuck deposit with that key")
        logger.info("Operator %s re-drove %s", operator.get("op"), key)
        return {"key": job.identity, "status": "queued"}

    @api_app.post("/api/sweep")
    async def api_sweep(chain: Optional[str] = None, to: Optional[str] = None,
                        x_operator_token: Optional[str] = Header(None)):
        operator = require_operator(x_operator_token)
        if chain is not None and chain not in service.clients:
            raise HTTPException(404, "Unknown chain")
        logger.info("Operator %s started a sweep (chain=%s)", operator.get("op"), chain or "all")
        try:
            results = await service.sweep(chain, to)
        except ValueError as e:
            raise HTTPException(400, str(e))
        return {key: [o.to_dict() for o in outcomes] for key, outcomes in results.items()}

    return api_app

#!/usr/bin/env python3
"""
Webhook HTTP server.
"""

import hashlib
import hmac
import json
import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from .config import get_settings
from .indexer import CCAIndexer
from .webhook import normalize_alchemy_payload, process_webhook_block

logger = logging.getLogger(__name__)


def is_valid_signature(body: bytes, signature: str, signing_key: str) -> bool:
    digest = hmac.new(signing_key.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature)


def create_app(indexer: CCAIndexer, signing_keys: Optional[List[str]] = None) -> FastAPI:
    """FastAPI app bound to an indexer; signing keys default to ALCHEMY_SIGNING_KEYS"""
    if signing_keys is None:
        signing_keys = get_settings().get_signing_keys()

    app = FastAPI(
        title="CCA Indexer",
        description="Webhook ingestion for continuous clearing auction events",
        version="1.0.0",
    )

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "chains": sorted(indexer.chains)}

    @app.post("/webhooks/alchemy/{chain_id}")
    async def alchemy_webhook(chain_id: int, request: Request):
        if chain_id not in indexer.chains:
            raise HTTPException(
                status_code=400,
                detail=f"Unsupported chainId in URL: {chain_id}. Allowed: {sorted(indexer.chains)}",
            )
        if not signing_keys:
            logger.error("ALCHEMY_SIGNING_KEYS is not set or empty")
            raise HTTPException(status_code=500, detail="Server configuration error")

        raw_body = await request.body()
        signature = request.headers.get('X-Alchemy-Signature')
        if not signature:
            logger.warning("Missing X-Alchemy-Signature header")
            raise HTTPException(status_code=401, detail="Unauthorized - missing signature")
        if not any(is_valid_signature(raw_body, signature, key) for key in signing_keys):
            logger.warning("Invalid signature - request not from Alchemy")
            raise HTTPException(status_code=401, detail="Unauthorized - invalid signature")

        try:
            body = json.loads(raw_body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")

        try:
            block = normalize_alchemy_payload(body)
        except ValueError as e:
            logger.warning(f"Rejected webhook payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid request format")

        # Blocking psycopg2/web3 calls stay off the event loop
        return await run_in_threadpool(process_webhook_block, indexer.processor, chain_id, block)

    return app

# src/bridge/bridge_server.py

from typing import Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bridge.request_models import HealthResponse, RegisterPromptRequest
from common.logging_utils import log_event
from fulfillment.store import FulfillmentStore


def create_app(
    store: FulfillmentStore,
    *,
    node_address: str,
    public_key: Optional[str] = None,
    cors_origins: Sequence[str] = ("*",),
) -> FastAPI:
    """
    HTTP bridge the client uses to hand the worker a prompt (the ledger only
    ever sees its hash) and to fetch the worker's encryption key.
    """
    app = FastAPI(title="VerifAI Prompt Registry")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        log_event(
            "bridge_rejected_request",
            extra={"path": request.url.path, "errors": len(exc.errors())},
            level="warning",
        )
        return JSONResponse(status_code=400, content={"error": "Missing requestId or prompt"})

    @app.post("/register-prompt")
    async def register_prompt(body: RegisterPromptRequest):
        entry = body.to_entry()
        store.register_prompt(entry)

        log_event(
            "prompt_registered",
            request_id=entry.request_id,
            extra={"encrypted": entry.encrypted, "has_prompt_hash": entry.prompt_hash is not None},
        )
        return {"ok": True}

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(node=node_address, publicKey=public_key)

    return app

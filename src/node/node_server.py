# src/node/node_server.py
import argparse
import asyncio
import sys

import uvicorn

from bridge.bridge_server import create_app
from clients.inference_client import InferenceClient
from clients.ledger_client import LedgerClient
from clients.storage_client import StorageClient
from common.config import Config, config
from common.encryption import public_key_hex
from common.errors import ConfigError
from common.logging_utils import log_event
from fulfillment.dispatcher import RequestDispatcher
from fulfillment.ingestion import EventSubscriber, Reconciler
from fulfillment.pipeline import FulfillmentPipeline
from fulfillment.publisher import ContentPublisher
from fulfillment.store import FulfillmentStore


class WorkerNode:
    """
    Wires every component of one worker node from a Config and runs them on a
    single event loop: the registry bridge (uvicorn), the event subscriber,
    the reconciler and the dispatcher's worker pool.
    """

    def __init__(self, cfg: Config):
        self.cfg = cfg

        self.store = FulfillmentStore(
            cfg.STORE_PATH,
            backoff_base_s=cfg.RETRY_BACKOFF_BASE_MS / 1000.0,
            backoff_max_s=cfg.RETRY_BACKOFF_MAX_MS / 1000.0,
        )
        self.ledger = LedgerClient(
            rpc_url=cfg.RPC_URL,
            contract_address=cfg.CONTRACT_ADDRESS,
            private_key=cfg.PRIVATE_KEY,
            flow_contract_address=cfg.FLOW_CONTRACT_ADDRESS or None,
            request_timeout_s=cfg.RPC_TIMEOUT_MS / 1000.0,
            receipt_timeout_s=cfg.RECEIPT_TIMEOUT_MS / 1000.0,
        )
        self.inference = InferenceClient(
            api_key=cfg.PROVIDER_API_KEY,
            base_url=cfg.PROVIDER_BASE_URL,
            default_model=cfg.DEFAULT_MODEL,
            max_tokens=cfg.MAX_OUTPUT_TOKENS,
            temperature=cfg.TEMPERATURE,
            timeout_s=cfg.PROVIDER_TIMEOUT_MS / 1000.0,
            max_attempts=cfg.PROVIDER_MAX_ATTEMPTS,
        )
        self.storage = (
            StorageClient(
                endpoint=cfg.STORAGE_ENDPOINT,
                register_root=self.ledger.submit_flow_root if cfg.FLOW_CONTRACT_ADDRESS else None,
                timeout_s=cfg.STORAGE_TIMEOUT_MS / 1000.0,
                max_attempts=cfg.STORAGE_MAX_ATTEMPTS,
            )
            if cfg.STORAGE_ENDPOINT
            else None
        )

        self.pipeline = FulfillmentPipeline(
            store=self.store,
            provider=self.inference,
            publisher=ContentPublisher(self.storage),
            ledger=self.ledger,
            node_id=self.ledger.node_address,
            private_key=cfg.PRIVATE_KEY if cfg.ENCRYPTION_ENABLED else None,
            verify_prompt_hash=cfg.VERIFY_PROMPT_HASH,
            prompt_wait_attempts=cfg.PROMPT_WAIT_ATTEMPTS,
            prompt_wait_interval_s=cfg.PROMPT_WAIT_INTERVAL_MS / 1000.0,
        )
        self.dispatcher = RequestDispatcher(
            self.pipeline,
            concurrency=cfg.WORKER_CONCURRENCY,
            max_queue_size=cfg.QUEUE_MAX_SIZE,
        )

        poll_interval_s = cfg.POLL_INTERVAL_MS / 1000.0
        self.subscriber = EventSubscriber(self.ledger, self.dispatcher, poll_interval_s=poll_interval_s)
        self.reconciler = Reconciler(self.ledger, self.dispatcher, self.store, poll_interval_s=poll_interval_s)

        self.public_key = public_key_hex(cfg.PRIVATE_KEY) if cfg.ENCRYPTION_ENABLED else None
        self.app = create_app(
            self.store,
            node_address=self.ledger.node_address,
            public_key=self.public_key,
            cors_origins=cfg.CORS_ALLOW_ORIGINS,
        )

    async def run(self) -> None:
        recovered = self.store.recover()

        log_event(
            "worker_node_starting",
            node_id=self.ledger.node_address,
            extra={
                "contract": self.cfg.CONTRACT_ADDRESS,
                "rpc": self.cfg.RPC_URL,
                "model": self.cfg.DEFAULT_MODEL,
                "storage": self.cfg.STORAGE_ENDPOINT or "disabled",
                "encryption": self.cfg.ENCRYPTION_ENABLED,
                "concurrency": self.cfg.WORKER_CONCURRENCY,
                "recovered": recovered,
            },
        )

        try:
            total = await self.ledger.total_requests()
            log_event("ledger_total_requests", extra={"total": total})
        except Exception as e:
            log_event("ledger_unreachable_at_startup", error=repr(e), level="warning")

        server = uvicorn.Server(
            uvicorn.Config(
                self.app,
                host=self.cfg.WORKER_HOST,
                port=self.cfg.WORKER_PORT,
                log_level=self.cfg.LOG_LEVEL.lower(),
            )
        )

        self.dispatcher.start()
        loops = [
            asyncio.create_task(self.subscriber.run(), name="event-subscriber"),
            asyncio.create_task(self.reconciler.run(), name="reconciler"),
        ]

        try:
            await server.serve()
        finally:
            for task in loops:
                task.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            await self.dispatcher.stop()
            await self.inference.close()
            if self.storage is not None:
                await self.storage.close()
            self.store.close()
            log_event("worker_node_stopped", node_id=self.ledger.node_address)


# ------------------------------------------------------
# Entry point
# ------------------------------------------------------
def serve(cfg: Config = config) -> None:
    try:
        cfg.validate()
    except ConfigError as e:
        log_event("worker_config_invalid", error=str(e), level="error")
        sys.exit(1)

    asyncio.run(WorkerNode(cfg).run())


def main() -> None:
    parser = argparse.ArgumentParser(description="VerifAI inference worker node")
    parser.add_argument("--host", type=str, default=None, help="Bridge bind address")
    parser.add_argument("--port", type=int, default=None, help="Bridge HTTP port")
    parser.add_argument("--store", type=str, default=None, help="SQLite state file")
    args = parser.parse_args()

    if args.host is not None:
        config.WORKER_HOST = args.host
    if args.port is not None:
        config.WORKER_PORT = args.port
    if args.store is not None:
        config.STORE_PATH = args.store

    serve(config)


if __name__ == "__main__":
    main()

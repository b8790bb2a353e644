import asyncio
import logging
import sys

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from vending_relay.config import configure_logging, load_settings
from vending_relay.errors import ConfigurationError
from vending_relay.gateway import PaywayGateway
from vending_relay.orchestrator import TransactionOrchestrator
from vending_relay.store import FirebaseTree, init_firebase
from vending_relay.watcher import TreeWatcher

logger = logging.getLogger(__name__)

app = FastAPI(title="Vending Payment Relay")


def log_loop_exception(loop, context):
    exc = context.get("exception")
    logger.error(f"Unhandled asyncio error: {context.get('message')}", exc_info=exc)


@app.on_event("startup")
async def startup_event():
    settings = load_settings()
    configure_logging(settings.log_level)
    asyncio.get_running_loop().set_exception_handler(log_loop_exception)

    firebase_app = init_firebase(settings)
    tree = FirebaseTree(firebase_app, settings.root)
    client = httpx.AsyncClient(timeout=30.0)
    orchestrator = TransactionOrchestrator(settings, PaywayGateway(settings, client), tree)
    watcher = TreeWatcher(tree, orchestrator)
    watcher.start()

    app.state.http_client = client
    app.state.orchestrator = orchestrator
    app.state.watcher = watcher


@app.on_event("shutdown")
async def shutdown_event():
    watcher = getattr(app.state, "watcher", None)
    if watcher is not None:
        await watcher.close()
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.close()
    client = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()


@app.get("/health", response_class=PlainTextResponse)
async def health():
    return "OK"


def main():
    try:
        settings = load_settings()
    except ConfigurationError as e:
        configure_logging()
        logger.error(str(e))
        sys.exit(1)
    configure_logging(settings.log_level)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()

"""
main.py — FastAPI Entry Point for the Order Service

This module provides the REST API interface for placing orders. Requests reach
it through the API gateway (prefix /api/order) already authenticated.

Responsibilities:
    • Accept new orders via HTTP API and run the placement workflow
    • Build and tear down the workflow collaborators on startup/shutdown
    • Provide system health information including circuit breaker states
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import config
from .clients import InventoryClient, RabbitMQEventPublisher
from .logging_config import setup_logging, get_logger
from .models import OrderRequest
from .resilience import ResiliencePolicyExecutor
from .store import SqliteOrderStore
from .tracing import Tracer
from .workflow import OrderPlacementOrchestrator, ServiceContext

# Initialization
# Configure logging and initialize FastAPI app
setup_logging()
log = get_logger(__name__)
app = FastAPI(title="Order Service")


def build_context() -> ServiceContext:
    """
    Builds the default collaborators from the environment configuration.

    Returns:
        ServiceContext: Store, inventory client, publisher, resilience executor and tracer.
    """
    store = SqliteOrderStore(config.ORDER_DB_PATH)
    store.init_db()
    return ServiceContext(
        store=store,
        inventory=InventoryClient(),
        publisher=RabbitMQEventPublisher(),
        resilience=ResiliencePolicyExecutor(config.load_resilience_config()),
        tracer=Tracer()
    )


# Startup Event: Build Workflow
@app.on_event("startup")
def on_startup():
    """
    FastAPI startup event handler.

    Builds the workflow collaborators unless an orchestrator has already been
    attached to `app.state` (e.g. by tests).
    """
    log.info("Order-Service startet...")
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = OrderPlacementOrchestrator(build_context())
    log.info("Order-Workflow bereit.")


@app.on_event("shutdown")
async def on_shutdown():
    """Closes the inventory HTTP client and drains the event publisher."""
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        return
    await orchestrator.context.inventory.aclose()
    orchestrator.context.publisher.close()
    log.info("Order-Service beendet.")


# API Endpoint: Gateway → Order Service
@app.post("/api/order")
async def place_order(order: OrderRequest, request: Request):
    """
    Receives a new order and runs the placement workflow to completion.

    Args:
        order (OrderRequest): Validated order payload.
        request (Request): Used to reach the orchestrator on `app.state`.

    Returns:
        JSONResponse:
            - 201 {"accepted": true, ...} if the order was placed and stored.
            - 409 {"accepted": false, ...} if it was rejected (out of stock,
              inventory unavailable or not storable).
    """
    orchestrator = request.app.state.orchestrator
    accepted = await orchestrator.create_order(order)
    if accepted:
        return JSONResponse(status_code=201, content={"accepted": True, "message": "Order placed successfully"})
    return JSONResponse(status_code=409, content={"accepted": False, "message": "Order rejected"})


# Health Check Endpoint
@app.get("/health")
def health_check(request: Request):
    """
    Simple health check endpoint.

    Returns:
        dict: Service availability and the current state of every circuit breaker in use.
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    circuits = orchestrator.context.resilience.circuit_states() if orchestrator else {}
    return {"status": "ok", "circuits": circuits}

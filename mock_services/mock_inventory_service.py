"""
mock_inventory_service.py — Mock Implementation of the Inventory Service (REST API)

This module provides a simulated Inventory Service for testing the order
placement workflow without relying on a real backend system. It exposes a
FastAPI application that answers stock checks the way the real service does.

Simulation Scenarios (based on SKU keywords in the request):
    • "OUT-OF-STOCK" → item reported as not available
    • "ERROR"        → the whole check answers with the "ERROR" sentinel
    • "MALFORMED"    → a body that is not a list of stock results
    • "SLOW"         → response delayed by SLOW_RESPONSE_S seconds
    • Otherwise      → item reported as available

Endpoints:
    POST /api/inventory — Handles batch stock checks.

Port:
    Default: 8082 (HTTP)
"""

import asyncio
import logging
import os
from typing import List

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

app = FastAPI(title="Mock Inventory Service")
logging.basicConfig(level=logging.INFO)

SLOW_RESPONSE_S = float(os.environ.get("SLOW_RESPONSE_S", "10"))


class StockCheck(BaseModel):
    """
    Represents one item of a stock check request.

    Attributes:
        skuCode (str): The product identifier.
        quantity (int): Requested quantity.
    """
    skuCode: str
    quantity: int


@app.post("/api/inventory")
async def check_stock(items: List[StockCheck]):
    """
    Handles a batch stock check.

    Args:
        items (List[StockCheck]): Requested items.

    Returns:
        A JSON list of {skuCode, available}, the JSON string "ERROR", or a
        malformed body, depending on the scenario markers in the SKUs.
    """
    skus = [item.skuCode for item in items]
    logging.info(f"[IS] Bestandsprüfung für {skus}")

    if any("SLOW" in sku for sku in skus):
        logging.info(f"[IS] Simuliere langsame Antwort ({SLOW_RESPONSE_S}s)...")
        await asyncio.sleep(SLOW_RESPONSE_S)

    if any("ERROR" in sku for sku in skus):
        logging.error("[IS] Bestandsprüfung fehlgeschlagen, antworte mit ERROR.")
        return JSONResponse(content="ERROR")

    if any("MALFORMED" in sku for sku in skus):
        logging.warning("[IS] Sende fehlerhafte Antwort.")
        return PlainTextResponse("{not json")

    results = []
    for item in items:
        available = "OUT-OF-STOCK" not in item.skuCode
        if not available:
            logging.warning(f"[IS] SKU {item.skuCode} ist nicht auf Lager.")
        results.append({"skuCode": item.skuCode, "available": available})
    return results


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8082)

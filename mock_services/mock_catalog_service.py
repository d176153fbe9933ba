"""
mock_catalog_service.py — Mock Implementation of the Catalog Service (REST API)

This module provides a simulated Catalog Service for local runs of the ordering service.
It exposes a simple FastAPI application that serves a small, fixed product list.

Simulation Scenarios:
    • Active products sold in some regions only
    • Inactive product (filtered out by the ordering service)
    • Slow lookup (ids containing "slow" exceed the client timeout)

Endpoints:
    GET /v1/products?ids=a,b — Returns the requested products.

Port:
    Default: 8002 (HTTP)
"""

import logging
import time

from fastapi import FastAPI, Query

app = FastAPI(title="Mock Catalog Service")
logging.basicConfig(level=logging.INFO)

PRODUCTS = {
    "mojito": {"id": "mojito", "name": "Classic Mojito", "price": "2500", "availableRegions": ["Lagos", "FCT"],
               "isActive": True},
    "chapman": {"id": "chapman", "name": "Chapman", "price": "1800", "availableRegions": ["Lagos", "Kano", "Rivers"],
                "isActive": True},
    "zobo-spritz": {"id": "zobo-spritz", "name": "Zobo Spritz", "price": "2200", "availableRegions": ["Lagos"],
                    "isActive": False},
}


@app.get("/v1/products")
def get_products(ids: str = Query("", description="Comma separated product ids")):
    """
    Returns the known products among the requested ids.

    Ids containing "slow" make the service sleep for 10 seconds to exercise the client timeout.
    """
    wanted = [i for i in ids.split(",") if i]
    logging.info(f"[CS] Produktabfrage für {wanted}")

    if any("slow" in i for i in wanted):
        logging.info("[CS] Simuliere langsame Antwort...")
        time.sleep(10)

    return {"products": [PRODUCTS[i] for i in wanted if i in PRODUCTS]}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8002)

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from requirements_cascade.api import router as requirements_router
from requirements_cascade.models import init_db

logger = logging.getLogger(__name__)

app = FastAPI(title="Requirements Cascade – MRP")
app.include_router(requirements_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def create_tables() -> None:
    init_db()
    logger.info("Requirements cascade tables ready")


# -------------------------------
# Endpoints
# -------------------------------

@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok"}

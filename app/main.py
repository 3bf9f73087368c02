"""FastAPI application exposing the expansion intelligence API."""

import logging
import sys
from pathlib import Path
from typing import Dict

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fastapi import FastAPI

from app.api.routes.expansion import router as expansion_router

app = FastAPI(title="Expansion Intelligence")
logger = logging.getLogger(__name__)

app.include_router(expansion_router)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="127.0.0.1", port=8000, reload=True)

# app.py: HTTP trigger for the estimate worker.
# A scheduler hits /process-job on an interval; each call runs at most one job.
from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from functools import lru_cache
from typing import Dict, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from estimator.errors import ConfigurationError
from estimator.pipeline import Worker
from estimator.settings import configure_logging, get_settings

configure_logging()
logger = logging.getLogger("estimator.app")

# ---------------- App setup ----------------
app = FastAPI(title="BINSR Pros Estimate Worker")


@lru_cache(maxsize=1)
def get_worker() -> Worker:
    return Worker.from_settings(get_settings())


# ---------------- Models ----------------
class ProcessJobResponse(BaseModel):
    ok: bool
    job_id: Optional[str] = None
    status: Optional[str] = None
    emailed: bool = False
    error: Optional[str] = None
    email_error: Optional[str] = None
    message: Optional[str] = None
    timings: Dict[str, float] = {}


class HealthResponse(BaseModel):
    ok: bool
    jobs: int
    config_version_id: int
    catalog_items: int


# ---------------- Routes ----------------
async def _process_job(worker: Worker) -> ProcessJobResponse:
    try:
        result = await asyncio.to_thread(worker.process_next_job)
    except ConfigurationError as e:
        logger.error("process-job: configuration error, nothing claimed: %s", e)
        raise HTTPException(status_code=500, detail=f"Configuration error: {e}")
    return ProcessJobResponse(**result.to_dict())


@app.get("/process-job", response_model=ProcessJobResponse)
async def process_job_get(worker: Worker = Depends(get_worker)):
    return await _process_job(worker)


@app.post("/process-job", response_model=ProcessJobResponse)
async def process_job_post(worker: Worker = Depends(get_worker)):
    return await _process_job(worker)


@app.get("/health", response_model=HealthResponse)
async def health(worker: Worker = Depends(get_worker)):
    try:
        return HealthResponse(**await asyncio.to_thread(worker.health))
    except (ConfigurationError, SQLAlchemyError) as e:
        raise HTTPException(status_code=503, detail=str(e))

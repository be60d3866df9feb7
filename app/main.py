from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import uvicorn
from fastapi import FastAPI, Request

from app.config import load_settings
from app.jobs.attendance import build_automation, configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = load_settings()
    configure_logging(settings.log_level)
    automation = build_automation(settings)
    automation.start()
    app.state.automation = automation
    try:
        yield
    finally:
        await automation.shutdown()


app = FastAPI(title="UniFi Access Attendance", lifespan=lifespan)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/jobs")
def jobs(request: Request) -> list[dict[str, Any]]:
    scheduler = request.app.state.automation.scheduler
    result = []
    for job in scheduler.jobs():
        next_run = scheduler.next_run_time(job.name)
        result.append(
            {
                "name": job.name,
                "running": job.running,
                "next_run_time": next_run.isoformat() if next_run else None,
            }
        )
    return result


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    uvicorn.run("app.main:app", host=host, port=port)


if __name__ == "__main__":
    run()

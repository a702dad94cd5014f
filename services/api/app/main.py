from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import Counter, Histogram, make_asgi_app

from libs.core import llm_provider, logging as core_logging
from libs.core.config import IdentityClientConfig, LLMSettings, PlannerSettings
from libs.core.day_planner import DayPlanner
from libs.core.errors import DayPlannerError
from libs.core.token_exchange import TokenExchanger

core_logging.configure_logging("api")
LOGGER = core_logging.get_logger("api")

SERVICE_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_LANGUAGE = "en-US"

day_plans_total = Counter("day_plans_total", "Day plan requests", ["outcome"])
day_plan_duration_seconds = Histogram("day_plan_duration_seconds", "Day plan request duration")


def _load_settings() -> PlannerSettings:
    settings = PlannerSettings.from_env()
    if not os.getenv("DAYPLANNER_ROOT_DIR"):
        settings = settings.model_copy(update={"root_dir": SERVICE_ROOT})
    return settings


def build_day_planner() -> DayPlanner:
    settings = _load_settings()
    exchanger = TokenExchanger(
        IdentityClientConfig.from_env(), timeout_s=settings.token_exchange_timeout_s
    )
    provider = llm_provider.resolve_provider(LLMSettings.from_env())
    return DayPlanner(settings, exchanger, provider)


def extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        return ""
    parts = authorization.split()
    return parts[1] if len(parts) > 1 else ""


def extract_language(accept_language: str | None) -> str:
    if not accept_language:
        return DEFAULT_LANGUAGE
    first = accept_language.split(",")[0].split(";")[0].strip()
    return first or DEFAULT_LANGUAGE


app = FastAPI(title="Day Planner Agent API")

cors_origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:4321").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Accept-Language", "Content-Type"],
)
app.mount("/metrics", make_asgi_app())
app.state.day_planner = build_day_planner()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.api_route("/api/day-plan", methods=["GET", "POST"])
async def day_plan(request: Request) -> Dict[str, Any]:
    planner: DayPlanner = request.app.state.day_planner
    credential = extract_bearer_token(request.headers.get("authorization"))
    user_language = extract_language(request.headers.get("accept-language"))
    LOGGER.info(
        "day_plan_requested",
        has_credential=bool(credential),
        user_language=user_language,
    )
    cancel_event = asyncio.Event()
    deadline = asyncio.get_running_loop().call_later(
        planner.settings.request_timeout_s, cancel_event.set
    )
    started_at = time.monotonic()
    try:
        result = await planner.plan_day(credential, user_language, cancel_event=cancel_event)
    except DayPlannerError as exc:
        day_plans_total.labels(outcome=type(exc).__name__).inc()
        LOGGER.error(
            "day_plan_failed",
            error=exc.detail,
            error_type=type(exc).__name__,
            status_code=exc.status_code,
        )
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    finally:
        deadline.cancel()
        day_plan_duration_seconds.observe(time.monotonic() - started_at)
    day_plans_total.labels(outcome="success").inc()
    return result.model_dump(by_alias=True)

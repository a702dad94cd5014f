import asyncio
import os

from fastapi.testclient import TestClient

os.environ["LLM_PROVIDER"] = "mock"
os.environ.pop("DAYPLANNER_ROOT_DIR", None)

from services.api.app import main  # noqa: E402
from libs.core.config import PlannerSettings  # noqa: E402
from libs.core.errors import PluginLoadError, RequestCancelledError, StructuredOutputError  # noqa: E402
from libs.core.models import DayPlanResult, Meeting  # noqa: E402

client = TestClient(main.app)


class _FakePlanner:
    def __init__(self, result=None, error=None, delay_s: float = 0.0) -> None:
        self.settings = PlannerSettings(request_timeout_s=0.05 if delay_s else 120.0)
        self.result = result or DayPlanResult()
        self.error = error
        self.delay_s = delay_s
        self.calls = []

    async def plan_day(self, credential, user_language, cancel_event=None):
        self.calls.append((credential, user_language))
        if self.delay_s:
            for _ in range(int(self.delay_s / 0.01)):
                if cancel_event is not None and cancel_event.is_set():
                    raise RequestCancelledError()
                await asyncio.sleep(0.01)
        if self.error is not None:
            raise self.error
        return self.result


def _use(planner: _FakePlanner, monkeypatch) -> _FakePlanner:
    monkeypatch.setattr(main.app.state, "day_planner", planner)
    return planner


def test_health() -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_default_planner_loads_bundled_plugins() -> None:
    assert main.app.state.day_planner.settings.root_dir == main.SERVICE_ROOT
    assert (main.SERVICE_ROOT / "CopilotAgentPlugins" / "CalendarPlugin").is_dir()


def test_day_plan_returns_wire_format(monkeypatch) -> None:
    meeting = Meeting(
        title="Standup",
        start_time="09:00",
        end_time="09:15",
        attendees=["Ana Lopez"],
        summary="Daily sync.",
        preparation_recommendation="List blockers.",
    )
    planner = _use(_FakePlanner(result=DayPlanResult(meetings=[meeting])), monkeypatch)

    response = client.get(
        "/api/day-plan",
        headers={"Authorization": "Bearer user-token", "Accept-Language": "fr-FR,fr;q=0.9,en;q=0.8"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "meetings": [
            {
                "meetingTitle": "Standup",
                "startTime": "09:00",
                "endTime": "09:15",
                "attendees": ["Ana Lopez"],
                "meetingSummary": "Daily sync.",
                "preparationRecommendation": "List blockers.",
            }
        ]
    }
    assert planner.calls == [("user-token", "fr-FR")]


def test_day_plan_without_headers_uses_defaults(monkeypatch) -> None:
    planner = _use(_FakePlanner(), monkeypatch)
    response = client.post("/api/day-plan")
    assert response.status_code == 200
    assert response.json() == {"meetings": []}
    assert planner.calls == [("", "en-US")]


def test_day_plan_maps_plugin_failure(monkeypatch) -> None:
    _use(_FakePlanner(error=PluginLoadError("CalendarPlugin", "bad manifest")), monkeypatch)
    response = client.get("/api/day-plan", headers={"Authorization": "Bearer t"})
    assert response.status_code == 500
    assert response.json()["detail"] == "Plugin creation failed for CalendarPlugin: bad manifest"


def test_day_plan_maps_structured_output_failure(monkeypatch) -> None:
    _use(_FakePlanner(error=StructuredOutputError("not a DayPlanResult")), monkeypatch)
    response = client.get("/api/day-plan")
    assert response.status_code == 502


def test_day_plan_deadline_cancels_request(monkeypatch) -> None:
    _use(_FakePlanner(delay_s=2.0), monkeypatch)
    response = client.get("/api/day-plan")
    assert response.status_code == 504
    assert response.json()["detail"] == "request_cancelled"


def test_extract_bearer_token() -> None:
    assert main.extract_bearer_token("Bearer abc") == "abc"
    assert main.extract_bearer_token("bearer   abc  ") == "abc"
    assert main.extract_bearer_token("Bearer") == ""
    assert main.extract_bearer_token(None) == ""


def test_extract_language() -> None:
    assert main.extract_language("de-DE,de;q=0.9") == "de-DE"
    assert main.extract_language("es;q=0.8") == "es"
    assert main.extract_language("") == "en-US"
    assert main.extract_language(None) == "en-US"


def test_metrics_endpoint_exposes_counters(monkeypatch) -> None:
    _use(_FakePlanner(), monkeypatch)
    client.get("/api/day-plan")
    response = client.get("/metrics/")
    assert response.status_code == 200
    assert "day_plans_total" in response.text

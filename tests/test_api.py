"""HTTP surface tests through FastAPI's TestClient."""

import asyncio
import json

import graphviz
import pytest
from fastapi.testclient import TestClient

from stepviz import store
from stepviz.analysis import AlgorithmAnalyst, NOT_CONFIGURED_EXPLANATION, RequestGate
from stepviz.config import Settings
from stepviz.main import Session, create_app
from stepviz.tracer import TraceRuntime

from .test_analysis import REPORT_JSON, FakeModel

SOURCE = "x = 5\ny = x + 1\nprint(y)"


class ExplodingRuntime:
    """Runtime whose every run fails with the given exception."""

    def __init__(self, exc):
        self.exc = exc

    def initialize(self):
        pass

    def run(self, code, prompt_provider=None):
        raise self.exc


def _client(model=None, runtime=None, api_key=None):
    analyst = AlgorithmAnalyst(api_key=api_key, model=model) if model else AlgorithmAnalyst(api_key=api_key)
    app = create_app(
        settings=Settings(debounce_seconds=0),
        analyst=analyst,
        runtime=runtime,
        gate=RequestGate(delay=0),
    )
    return TestClient(app)


@pytest.fixture
def client():
    with _client(model=FakeModel("Explained.", REPORT_JSON, "garbage")) as client:
        yield client


class TestRun:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "running" in response.text

    def test_run_returns_trace(self, client):
        data = client.post("/run", json={"code": SOURCE}).json()
        assert data["total"] >= 2
        assert data["currentIndex"] == 0
        assert all(step["output"] == "6\n" for step in data["steps"])
        assert data["steps"][0]["currentLine"] == 1

    def test_run_with_inputs(self, client):
        data = client.post("/run", json={"code": "n = input('n: ')\nprint(int(n) * 2)", "inputs": ["21"]}).json()
        assert data["steps"][-1]["output"] == "n: 21\n42\n"

    def test_rejected_import(self, client):
        data = client.post("/run", json={"code": "d = {1:2}\nimport requests"}).json()
        step = data["steps"][0]
        assert step["error"]["kind"] == "Error"
        assert step["frame"]["variables"] == {}
        assert step["output"].startswith("Error: requests not found or not supported")

    def test_run_while_running_conflicts(self, client):
        session = client.app.state.session
        session.state = store.begin_run(session.state)
        response = client.post("/run", json={"code": SOURCE})
        assert response.status_code == 409

    def test_program_raising_base_exception_subclass(self, client):
        source = "x = 1\nclass Stop(BaseException):\n    pass\nraise Stop('boom')"
        response = client.post("/run", json={"code": source})
        assert response.status_code == 200
        assert response.json()["steps"][0]["error"] == {"kind": "Error", "message": "boom"}
        assert client.get("/state").json()["isRunning"] is False
        assert client.post("/run", json={"code": SOURCE}).status_code == 200

    def test_runtime_not_ready(self):
        runtime = TraceRuntime(allowed_modules=("no_such_module_here",))
        with _client(runtime=runtime) as client:
            response = client.post("/run", json={"code": SOURCE})
            assert response.status_code == 503
            state = client.get("/state").json()
            assert "no_such_module_here" in state["error"]


class TestNavigation:
    def test_state_before_run(self, client):
        data = client.get("/state").json()
        assert data["total"] == 0
        assert data["snapshot"] is None

    def test_step_through(self, client):
        client.post("/run", json={"code": SOURCE})
        assert client.post("/state/next").json()["currentIndex"] == 1
        assert client.post("/state/prev").json()["currentIndex"] == 0
        last = client.post("/state/last").json()
        assert last["currentIndex"] == last["total"] - 1
        assert client.post("/state/first").json()["currentIndex"] == 0

    def test_goto(self, client):
        client.post("/run", json={"code": SOURCE})
        data = client.post("/state/goto", json={"index": 1}).json()
        assert data["currentIndex"] == 1
        assert data["snapshot"]["currentLine"] == 2
        assert data["snapshot"]["output"] == "6\n"

    def test_goto_out_of_range(self, client):
        client.post("/run", json={"code": SOURCE})
        assert client.post("/state/goto", json={"index": 99}).json()["currentIndex"] == 0

    def test_reset(self, client):
        client.post("/run", json={"code": SOURCE})
        data = client.post("/reset").json()
        assert data["total"] == 0
        assert data["error"] is None

    def test_play(self, client):
        total = client.post("/run", json={"code": SOURCE}).json()["total"]
        response = client.get("/state/play", params={"speed": 1000})
        assert response.headers["content-type"].startswith("application/x-ndjson")
        frames = [json.loads(line) for line in response.text.splitlines()]
        assert [f["currentIndex"] for f in frames] == list(range(1, total))
        assert client.get("/state").json()["currentIndex"] == total - 1

    def test_play_rejects_bad_speed(self, client):
        assert client.get("/state/play", params={"speed": 0}).status_code == 400


class TestDiagram:
    def test_layout_before_run(self, client):
        assert client.get("/state/layout").status_code == 404

    def test_layout(self, client):
        client.post("/run", json={"code": "a = [1, 2]"})
        client.post("/state/last")
        data = client.get("/state/layout").json()
        assert data["frames"][0]["name"] == "Global frame"
        assert data["objects"][0]["type"] == "list"
        assert data["connectors"][0]["kind"] == "elbow"

    def test_svg(self, client, monkeypatch):
        monkeypatch.setattr(graphviz.Digraph, "pipe", lambda self, **kwargs: "<svg><g/></svg>")
        client.post("/run", json={"code": SOURCE})
        first = client.get("/state/svg")
        assert first.status_code == 200
        assert first.headers["content-type"].startswith("image/svg+xml")
        assert "<style>" in first.text
        # Same step again: no animation
        assert "<style>" not in client.get("/state/svg").text

    def test_svg_without_graphviz(self, client, monkeypatch):
        def missing(self, **kwargs):
            raise graphviz.ExecutableNotFound(["neato"])

        monkeypatch.setattr(graphviz.Digraph, "pipe", missing)
        client.post("/run", json={"code": SOURCE})
        assert client.get("/state/svg").status_code == 503


class TestAnalysisEndpoints:
    def test_status(self, client):
        data = client.get("/api/status").json()
        assert data["status"] == "ok"
        assert data["apiKeyConfigured"] is True
        assert data["runtimeReady"] is True

    def test_explain(self, client):
        data = client.post("/api/explain-algorithm", json={"code": "x = 1"}).json()
        assert data == {"explanation": "Explained.", "status": "success"}

    def test_empty_code(self, client):
        assert client.post("/api/explain-algorithm", json={"code": ""}).status_code == 400
        assert client.post("/api/analyze-complexity", json={}).status_code == 400

    def test_complexity_then_malformed_reply(self, client):
        client.post("/api/explain-algorithm", json={"code": "x = 1"})
        ok = client.post("/api/analyze-complexity", json={"code": "x = 1"})
        assert ok.status_code == 200
        assert ok.json()["algorithmName"] == "Bubble Sort"

        failed = client.post("/api/analyze-complexity", json={"code": "x = 1"})
        assert failed.status_code == 500
        body = failed.json()
        assert body["timeComplexity"] == "Error"
        assert body["isKnownAlgorithm"] is False
        assert body["description"] == "Could not analyze algorithm complexity. Please try again later."

    def test_model_failure(self):
        with _client(model=FakeModel(RuntimeError("network down"))) as client:
            response = client.post("/api/explain-algorithm", json={"code": "x = 1"})
            assert response.status_code == 500
            assert "network down" in response.json()["error"]

    def test_missing_api_key(self):
        with _client() as client:
            assert client.get("/api/status").json()["apiKeyConfigured"] is False
            response = client.post("/api/explain-algorithm", json={"code": "x = 1"})
            assert response.status_code == 500
            assert response.json()["explanation"] == NOT_CONFIGURED_EXPLANATION
            complexity = client.post("/api/analyze-complexity", json={"code": "x = 1"}).json()
            assert complexity["worstCase"] == "Error"


class TestSession:
    @pytest.fixture
    def session(self):
        session = Session(TraceRuntime())
        session.initialize()
        return session

    def test_failed_run_is_not_left_running(self):
        session = Session(ExplodingRuntime(RuntimeError("tracer crashed")))
        session.initialize()
        with pytest.raises(RuntimeError):
            session.run(SOURCE)
        assert session.state.is_running is False
        assert session.state.error == "tracer crashed"

        session.runtime = TraceRuntime()
        session.runtime.initialize()
        assert session.run(SOURCE).total >= 2

    def test_base_exception_from_runtime_is_not_left_running(self):
        class Stop(BaseException):
            pass

        session = Session(ExplodingRuntime(Stop()))
        session.initialize()
        with pytest.raises(Stop):
            session.run(SOURCE)
        assert session.state.is_running is False
        assert session.state.error == "Stop"

    def test_play_walks_the_live_trace(self, session):
        session.run(SOURCE)

        async def no_wait(seconds):
            pass

        async def scenario():
            return [state.current_index async for state in session.play(1000, sleep=no_wait)]

        assert asyncio.run(scenario()) == list(range(1, session.state.total))
        assert session.state.current_index == session.state.total - 1

    def test_play_stops_when_a_new_run_replaces_the_trace(self, session):
        session.run(SOURCE)

        async def run_during_sleep(seconds):
            session.run("z = 99")

        async def scenario():
            return [state async for state in session.play(1000, sleep=run_during_sleep)]

        assert asyncio.run(scenario()) == []
        assert session.state.current_index == 0
        assert "z" in session.state.steps[-1].frame.variables

    def test_play_stops_after_reset(self, session):
        session.run(SOURCE)

        async def reset_during_sleep(seconds):
            session.apply(store.reset)

        async def scenario():
            return [state async for state in session.play(1000, sleep=reset_during_sleep)]

        assert asyncio.run(scenario()) == []
        assert session.state.total == 0

    def test_play_respects_navigation_during_playback(self, session):
        session.run(SOURCE)

        async def jump_to_end(seconds):
            session.apply(store.last_step)

        async def scenario():
            return [state async for state in session.play(1000, sleep=jump_to_end)]

        assert asyncio.run(scenario()) == []
        assert session.state.current_index == session.state.total - 1

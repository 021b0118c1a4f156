import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import graphviz
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from . import store
from .analysis import (
    EXPLANATION_FALLBACK,
    NOT_CONFIGURED_EXPLANATION,
    AlgorithmAnalyst,
    ComplexityReport,
    RequestGate,
)
from .config import LayoutConfig, configure_logging, load_settings
from .errors import (
    AnalysisNotConfigured,
    AnalysisUnavailable,
    MalformedAnalysis,
    RunInProgressError,
    RuntimeNotReadyError,
    SupersededRequest,
)
from .layout import layout
from .renderer import Renderer
from .tracer import TraceRuntime, inputs_provider

logger = logging.getLogger(__name__)


class RunRequest(BaseModel):
    code: str
    inputs: list[str] = Field(default_factory=list)


class GotoRequest(BaseModel):
    index: int


class CodeRequest(BaseModel):
    code: str = ""


class Session:
    """The single execution session served by this process."""

    def __init__(self, runtime, layout_config=None, renderer=None):
        self.runtime = runtime
        self.layout_config = layout_config or LayoutConfig()
        self.renderer = renderer or Renderer()
        self.state = store.initial_state()
        self.last_rendered = None

    def initialize(self):
        try:
            self.runtime.initialize()
        except RuntimeNotReadyError as exc:
            logger.error("Python runtime failed to initialize: %s", exc)
            self.state = store.mark_failed(self.state, str(exc))
        else:
            self.state = store.mark_initialized(self.state)

    def run(self, code, inputs=()):
        self.state = store.begin_run(self.state)
        try:
            steps = self.runtime.run(code, inputs_provider(inputs))
        except BaseException as exc:
            # Whatever escapes the runtime, the session must not stay "running"
            self.state = store.fail_run(self.state, str(exc) or type(exc).__name__)
            raise
        self.state = store.set_steps(self.state, steps)
        self.last_rendered = None
        return self.state

    async def play(self, speed=1.0, sleep=asyncio.sleep):
        """Step through the live trace until its end, or until a new run or reset replaces it."""
        steps = self.state.steps
        async for _ in store.autoplay(self.state, speed, sleep=sleep):
            if self.state.steps is not steps or self.state.current_index >= self.state.total - 1:
                logger.debug("Playback stopped at step %d", self.state.current_index)
                return
            self.state = store.step_forward(self.state)
            yield self.state

    def apply(self, reducer, *args):
        self.state = reducer(self.state, *args)
        return self.state

    def current_layout(self):
        snapshot = store.current_snapshot(self.state)
        if snapshot is None:
            return None
        return layout(snapshot, self.layout_config)

    def current_svg(self):
        current = self.current_layout()
        if current is None:
            return None
        # Animate only when the step changed since the previous render
        animate = self.last_rendered != self.state.current_index
        svg = self.renderer.render_svg(current, animate=animate)
        self.last_rendered = self.state.current_index
        return svg

    def describe(self):
        snapshot = store.current_snapshot(self.state)
        return {
            "currentIndex": self.state.current_index,
            "total": self.state.total,
            "snapshot": snapshot.to_json_dict() if snapshot is not None else None,
            "error": self.state.error,
            "isRunning": self.state.is_running,
        }


def client_key(request: Request):
    return request.client.host if request.client else "anonymous"


def create_app(settings=None, analyst=None, runtime=None, gate=None):
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    session = Session(runtime or TraceRuntime(max_steps=settings.max_steps))
    analyst = analyst or AlgorithmAnalyst(api_key=settings.gemini_api_key, model_name=settings.model)
    gate = gate or RequestGate(delay=settings.debounce_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        session.initialize()
        logger.info("Gemini API key configured: %s", analyst.configured)
        yield

    app = FastAPI(title="stepviz", lifespan=lifespan)
    app.state.session = session

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RunInProgressError)
    async def run_in_progress(request: Request, exc: RunInProgressError):
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(RuntimeNotReadyError)
    async def runtime_not_ready(request: Request, exc: RuntimeNotReadyError):
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(SupersededRequest)
    async def superseded(request: Request, exc: SupersededRequest):
        return JSONResponse(status_code=409, content={"error": str(exc), "superseded": True})

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "Python visualizer API is running!"

    @app.post("/run")
    def run_code(request: RunRequest):
        state = session.run(request.code, request.inputs)
        return {
            "steps": [step.to_json_dict() for step in state.steps],
            "currentIndex": state.current_index,
            "total": state.total,
        }

    @app.get("/state")
    async def get_state():
        return session.describe()

    @app.post("/state/goto")
    async def goto(request: GotoRequest):
        session.apply(store.goto_index, request.index)
        return session.describe()

    @app.post("/state/next")
    async def next_step():
        session.apply(store.step_forward)
        return session.describe()

    @app.post("/state/prev")
    async def prev_step():
        session.apply(store.step_back)
        return session.describe()

    @app.post("/state/first")
    async def first():
        session.apply(store.first_step)
        return session.describe()

    @app.post("/state/last")
    async def last():
        session.apply(store.last_step)
        return session.describe()

    @app.post("/reset")
    async def reset():
        session.apply(store.reset)
        session.last_rendered = None
        return session.describe()

    @app.get("/state/layout")
    async def current_layout():
        result = session.current_layout()
        if result is None:
            raise HTTPException(status_code=404, detail="Nothing has been run yet")
        return result.to_json_dict()

    @app.get("/state/svg")
    def current_svg():
        try:
            svg = session.current_svg()
        except graphviz.ExecutableNotFound as exc:
            logger.error("Graphviz is not installed: %s", exc)
            return JSONResponse(status_code=503, content={"error": "Graphviz executables are not available"})
        if svg is None:
            raise HTTPException(status_code=404, detail="Nothing has been run yet")
        return Response(content=svg, media_type="image/svg+xml")

    @app.get("/state/play")
    async def play(speed: float = 1.0):
        if speed <= 0:
            raise HTTPException(status_code=400, detail="speed must be positive")

        async def frames():
            async for state in session.play(speed):
                snapshot = store.current_snapshot(state)
                yield json.dumps({"currentIndex": state.current_index, "currentLine": snapshot.current_line}) + "\n"

        return StreamingResponse(frames(), media_type="application/x-ndjson")

    @app.get("/api/status")
    async def status():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "apiKeyConfigured": analyst.configured,
            "runtimeReady": session.state.is_initialized,
        }

    @app.post("/api/explain-algorithm")
    async def explain_algorithm(request: CodeRequest, http_request: Request):
        logger.info("Received algorithm explanation request (%d characters)", len(request.code))
        if not request.code:
            return JSONResponse(status_code=400, content={"error": "Code is required"})
        try:
            explanation = await gate.run(f"explain:{client_key(http_request)}", analyst.explain, request.code)
        except AnalysisNotConfigured as exc:
            return JSONResponse(status_code=500, content={"error": str(exc), "explanation": NOT_CONFIGURED_EXPLANATION})
        except AnalysisUnavailable as exc:
            return JSONResponse(status_code=500, content={"error": str(exc), "explanation": EXPLANATION_FALLBACK})
        return {"explanation": explanation, "status": "success"}

    @app.post("/api/analyze-complexity")
    async def analyze_complexity(request: CodeRequest, http_request: Request):
        logger.info("Received complexity analysis request (%d characters)", len(request.code))
        if not request.code:
            return JSONResponse(status_code=400, content={"error": "Code is required"})
        try:
            report = await gate.run(f"complexity:{client_key(http_request)}", analyst.analyze_complexity, request.code)
        except AnalysisNotConfigured as exc:
            description = NOT_CONFIGURED_EXPLANATION
            error = str(exc)
        except MalformedAnalysis as exc:
            description = "Could not analyze algorithm complexity. Please try again later."
            error = str(exc)
        except AnalysisUnavailable as exc:
            description = "Could not analyze algorithm complexity. Server error occurred."
            error = str(exc)
        else:
            return report.to_json_dict()
        body = ComplexityReport.unavailable(description).to_json_dict()
        return JSONResponse(status_code=500, content={"error": error, **body})

    return app


app = create_app()


def run():
    settings = load_settings()
    uvicorn.run("stepviz.main:app", host="0.0.0.0", port=8000, log_level=settings.log_level.lower())

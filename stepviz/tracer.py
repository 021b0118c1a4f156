import ast
import builtins
import functools
import importlib.util
import logging
import sys
import threading
from contextlib import contextmanager, redirect_stdout

from pydantic import BaseModel

from .config import ALLOWED_MODULES
from .errors import (
    RunInProgressError,
    RuntimeNotReadyError,
    StepLimitExceeded,
    UnsupportedImportError,
)
from .materializer import ObjectMaterializer
from .models import GLOBAL_FRAME, ErrorInfo, Frame, Snapshot
from .postprocess import process

logger = logging.getLogger(__name__)

USER_FILENAME = "<exec>"

INPUT_DISABLED = "INPUT_DISABLED"


def normalize_source(code):
    return code.replace("\r\n", "\n").replace("\r", "\n")


def decline_input(prompt):
    return ""


def end_program(code=None):
    """``exit()``/``quit()`` for user programs; the site versions close the host's stdin."""
    raise SystemExit(code)


class OutputCapturer:
    """Line-buffered stdout replacement: keeps everything written and mirrors it to the host stream."""

    def __init__(self, mirror=None):
        self.value = ""
        self._mirror = mirror

    def write(self, text):
        self.value += text
        if self._mirror is not None:
            self._mirror.write(text)
            if "\n" in text:
                self._mirror.flush()
        return len(text)

    def flush(self):
        if self._mirror is not None:
            self._mirror.flush()


class ImportGuard:
    def __init__(self, allowed=ALLOWED_MODULES):
        self.allowed = frozenset(allowed)

    def is_allowed(self, name):
        return name.partition(".")[0] in self.allowed

    def check_source(self, code):
        """Reject the first unsupported import before any line of the program runs."""
        tree = ast.parse(code, filename=USER_FILENAME)
        rejected = []
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                names = [alias.name for alias in node.names]
            elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
                names = [node.module]
            else:
                continue
            for name in names:
                if not self.is_allowed(name):
                    rejected.append((node.lineno, node.col_offset, name))
        if rejected:
            name = min(rejected)[2]
            logger.info("Rejected import of %s before execution", name)
            raise UnsupportedImportError(name)

    def custom_import(self, real_import, name, globals=None, locals=None, fromlist=(), level=0):
        if level == 0 and not self.is_allowed(name):
            logger.info("Rejected import of %s at runtime", name)
            raise UnsupportedImportError(name)
        return real_import(name, globals, locals, fromlist, level)

    def wrap(self, real_import):
        # Catches dynamic imports (__import__("x")) the source scan cannot see
        return functools.partial(self.custom_import, real_import)


class InputBridge:
    """``input()`` replacement that asks a synchronous prompt provider for the value."""

    def __init__(self, output):
        self.provider = None
        self._output = output

    @contextmanager
    def session(self, provider):
        self.provider = provider
        try:
            yield self
        finally:
            self.provider = None

    def request_input(self, prompt=""):
        if self.provider is None:
            logger.warning("Input requested outside of an active run")
            return INPUT_DISABLED
        prompt = str(prompt)
        if prompt:
            self._output.write(prompt)
        value = self.provider(prompt) or ""
        self._output.write(value + "\n")
        return value

    __call__ = request_input


# Frames of the instrumentation itself never become steps, whatever the user names things
INTERNAL_CODES = frozenset({
    OutputCapturer.write.__code__,
    OutputCapturer.flush.__code__,
    ImportGuard.custom_import.__code__,
    InputBridge.request_input.__code__,
    decline_input.__code__,
    end_program.__code__,
})


class CaptureHook:
    """sys.settrace hook that records one Snapshot per line event of user code."""

    def __init__(self, namespace, materializer, output, max_steps=1000):
        self.namespace = namespace
        self.materializer = materializer
        self.output = output
        self.max_steps = max_steps
        self.snapshots = []
        self._last_frame = None
        self._last_line = None
        self.events = 0

    def __call__(self, frame, event, arg):
        if not self.is_user_frame(frame):
            return None
        return self.trace_lines

    def trace_lines(self, frame, event, arg):
        if event == "line":
            self.capture(frame)
        elif event == "return" and frame.f_code.co_name == "<module>":
            # The effect of the last line is only visible once the module returns
            self.capture(frame, final=True)
        return self.trace_lines

    def is_user_frame(self, frame):
        return frame.f_globals is self.namespace and frame.f_code not in INTERNAL_CODES

    def user_frames(self, frame):
        frames = []
        while frame is not None:
            if self.is_user_frame(frame):
                frames.append(frame)
            frame = frame.f_back
        frames.reverse()
        return frames

    def capture(self, frame, final=False):
        line = frame.f_lineno or 1
        if not final:
            # Collapsed events count too, so a one-line infinite loop still hits the limit
            self.events += 1
            if self.events > self.max_steps:
                logger.warning("Step limit of %d reached", self.max_steps)
                raise StepLimitExceeded(self.max_steps)
            # Several events on one module-level line collapse into one step
            if frame is self._last_frame and line == self._last_line and frame.f_code.co_name == "<module>":
                return

        heap = {}
        stack = [self.describe_frame(f, heap) for f in self.user_frames(frame)]
        self.snapshots.append(
            Snapshot(frame=stack[-1], stack=stack, heap=heap, output=self.output.value, current_line=line)
        )
        self._last_frame = frame
        self._last_line = line

    def describe_frame(self, frame, heap):
        if frame.f_code.co_name == "<module>":
            name = GLOBAL_FRAME
            items = [(k, v) for k, v in list(frame.f_globals.items()) if not k.startswith("_")]
        else:
            name = frame.f_code.co_name
            items = [
                (k, v) for k, v in list(frame.f_locals.items())
                if not k.startswith("__") and k not in ("self", "cls")
            ]
        variables = {k: self.materializer.materialize(v, heap, name=k) for k, v in items}
        return Frame(name=name, variables=variables)

    def final_snapshot(self):
        """Global state after the run, for programs that produced no line events."""
        heap = {}
        items = [(k, v) for k, v in list(self.namespace.items()) if not k.startswith("_")]
        frame = Frame(variables={k: self.materializer.materialize(v, heap, name=k) for k, v in items})
        return Snapshot(frame=frame, stack=[frame], heap=heap, output=self.output.value)


def error_snapshot(error):
    return Snapshot(frame=Frame(name=GLOBAL_FRAME), heap={}, output=error.text, current_line=1, error=error)


class RawTrace(BaseModel):
    snapshots: list[Snapshot]
    output: str
    fallback: Snapshot | None = None


class TraceRuntime:
    """Runs user programs under the capture hook, one at a time."""

    def __init__(self, allowed_modules=ALLOWED_MODULES, max_steps=1000):
        self.guard = ImportGuard(allowed_modules)
        self.max_steps = max_steps
        self.ready = False
        self._lock = threading.Lock()

    def initialize(self):
        missing = sorted(name for name in self.guard.allowed if importlib.util.find_spec(name) is None)
        if missing:
            raise RuntimeNotReadyError(f"modules unavailable: {', '.join(missing)}")
        self.ready = True
        logger.info("Python runtime ready (%d importable modules)", len(self.guard.allowed))

    @property
    def is_running(self):
        return self._lock.locked()

    def sandbox_builtins(self, bridge):
        sandbox = dict(vars(builtins))
        sandbox["__import__"] = self.guard.wrap(builtins.__import__)
        sandbox["input"] = bridge
        sandbox["exit"] = sandbox["quit"] = end_program
        return sandbox

    def capture(self, code, prompt_provider=None):
        if not self.ready:
            raise RuntimeNotReadyError()
        if not self._lock.acquire(blocking=False):
            raise RunInProgressError()
        try:
            return self._capture(normalize_source(code), prompt_provider or decline_input)
        finally:
            self._lock.release()

    def _capture(self, code, prompt_provider):
        output = OutputCapturer(mirror=sys.stdout)
        bridge = InputBridge(output)
        namespace = {"__name__": "__main__"}
        namespace["__builtins__"] = self.sandbox_builtins(bridge)
        hook = CaptureHook(namespace, ObjectMaterializer(), output, self.max_steps)

        logger.info("Starting run (%d lines)", code.count("\n") + 1)
        error = None
        try:
            self.guard.check_source(code)
            compiled = compile(code, USER_FILENAME, "exec")
            previous = sys.gettrace()
            with redirect_stdout(output), bridge.session(prompt_provider):
                sys.settrace(hook)
                try:
                    exec(compiled, namespace)
                finally:
                    sys.settrace(previous)
        except SystemExit:
            logger.debug("Program called exit()")
        except KeyError as exc:
            error = ErrorInfo(kind="KeyError", message=str(exc))
        except StepLimitExceeded as exc:
            error = ErrorInfo(kind="Error", message=str(exc))
        except Exception as exc:
            error = ErrorInfo(kind="Error", message=str(exc))
        except KeyboardInterrupt:
            raise
        except BaseException as exc:
            # User classes deriving straight from BaseException
            error = ErrorInfo(kind="Error", message=str(exc) or type(exc).__name__)

        if error is not None:
            logger.info("Run failed: %s", error.text)
            output.write(error.text + "\n")
            return RawTrace(snapshots=[error_snapshot(error)], output=output.value)

        logger.info("Run finished with %d raw snapshots", len(hook.snapshots))
        fallback = None if hook.snapshots else hook.final_snapshot()
        return RawTrace(snapshots=hook.snapshots, output=output.value, fallback=fallback)

    def run(self, code, prompt_provider=None):
        raw = self.capture(code, prompt_provider)
        return process(raw.snapshots, raw.output, fallback=raw.fallback)


def inputs_provider(inputs):
    """Prompt provider answering from a fixed list of lines, then declining."""
    pending = list(inputs)

    def provide(prompt):
        return pending.pop(0) if pending else ""

    return provide


def run_user_code(code, inputs=(), max_steps=1000):
    runtime = TraceRuntime(max_steps=max_steps)
    runtime.initialize()
    return [step.to_json_dict() for step in runtime.run(code, inputs_provider(inputs))]

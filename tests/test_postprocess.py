"""Tests for the trace post-processor."""

from stepviz.models import (
    CounterEntry,
    DictEntry,
    ErrorInfo,
    Frame,
    ListEntry,
    PrimitiveValue,
    ReferenceValue,
    Snapshot,
)
from stepviz.postprocess import COUNTER_ANNOTATION, filter_frame, is_internal_step, process


def _snapshot(line, variables=None, heap=None, output="", name="Global frame"):
    frame = Frame(name=name, variables=variables or {})
    return Snapshot(frame=frame, stack=[frame], heap=heap or {}, output=output, current_line=line)


class TestFiltering:
    def test_system_names_are_removed(self):
        frame = Frame(variables={
            "x": PrimitiveValue(value="1"),
            "__doc__": PrimitiveValue(value="None"),
            "custom_import": PrimitiveValue(value="f"),
            "visualizer": PrimitiveValue(value="v"),
        })
        assert list(filter_frame(frame).variables) == ["x"]

    def test_user_json_binding_survives(self):
        frame = Frame(variables={"json": PrimitiveValue(value="<module 'json'>")})
        assert "json" in filter_frame(frame).variables

    def test_module_namespace_dicts_are_dropped(self):
        heap = {
            "id1": DictEntry(value={"__name__": "__main__", "x": "1"}),
            "id2": DictEntry(value={"a": "1"}),
        }
        steps = process([_snapshot(1, heap=heap)], "")
        assert list(steps[0].heap) == ["id2"]

    def test_filtering_applies_to_every_stack_frame(self):
        outer = Frame(variables={"__builtins__": PrimitiveValue(value="b"), "a": PrimitiveValue(value="1")})
        inner = Frame(name="f", variables={"real_import": PrimitiveValue(value="r"), "n": PrimitiveValue(value="2")})
        snapshot = Snapshot(frame=inner, stack=[outer, inner], current_line=2)
        step = process([snapshot, snapshot], "")[0]
        assert [list(f.variables) for f in step.stack] == [["a"], ["n"]]
        assert step.frame == step.stack[-1]

    def test_output_write_steps_are_dropped(self):
        steps = [_snapshot(1), _snapshot(2, name="OutputCapturer.write"), _snapshot(3)]
        assert [s.current_line for s in process(steps, "")] == [1, 3]

    def test_user_function_named_write_is_kept(self):
        assert not is_internal_step(_snapshot(2, name="write"))
        assert not is_internal_step(_snapshot(2, name="flush"))

    def test_user_binding_does_not_mark_a_step_internal(self):
        assert not is_internal_step(_snapshot(1, variables={"OutputCapturer": PrimitiveValue(value="c")}))


class TestBackfill:
    def test_final_output_on_every_step(self):
        steps = process([_snapshot(1, output=""), _snapshot(2, output="a\n"), _snapshot(3, output="a\n")], "a\nb\n")
        assert [s.output for s in steps] == ["a\nb\n"] * 3

    def test_single_step_is_duplicated(self):
        steps = process([_snapshot(1, variables={"x": PrimitiveValue(value="1")})], "")
        assert len(steps) == 2
        assert steps[0] == steps[1]
        assert steps[0] is not steps[1]

    def test_empty_trace_uses_fallback(self):
        fallback = _snapshot(1, variables={"x": PrimitiveValue(value="9"), "__name__": PrimitiveValue(value="m")})
        steps = process([], "out", fallback=fallback)
        assert len(steps) == 2
        assert list(steps[0].frame.variables) == ["x"]
        assert steps[0].output == "out"

    def test_empty_trace_without_fallback(self):
        steps = process([], "")
        assert len(steps) == 2
        assert steps[0].frame.variables == {}

    def test_error_snapshot_is_kept(self):
        error = ErrorInfo(kind="KeyError", message="'k'")
        snapshot = Snapshot(frame=Frame(), error=error)
        steps = process([snapshot], "KeyError: 'k'\n")
        assert all(s.error == error for s in steps)


class TestCounters:
    def test_counters_are_reannotated(self):
        heap = {
            "id1": CounterEntry(value={"a": "2"}, annotation="Counter for c"),
            "id2": ListEntry(elements=[ReferenceValue(id="id1")]),
        }
        steps = process([_snapshot(1, heap=heap), _snapshot(2, heap=heap)], "")
        for step in steps:
            assert step.heap["id1"].annotation == COUNTER_ANNOTATION
            assert isinstance(step.heap["id2"], ListEntry)

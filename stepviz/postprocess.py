"""Clean-up pass between raw capture and the execution store.

The raw trace may contain bindings and steps that belong to the
instrumentation rather than to the user's program. This module strips them,
backfills the final program output onto every step and guarantees that a
trace always has a "previous" step to compare against.
"""

import logging

from .models import CounterEntry, DictEntry, Frame, Snapshot

logger = logging.getLogger(__name__)

SYSTEM_NAMES = frozenset({
    "custom_import", "real_import", "unsupported_modules", "builtins", "to_js",
    "visualizer", "capturer", "execution_steps", "trace_execution",
    "run_with_trace", "create_error_state", "filter_system_variables",
})

# Steps recorded inside the output capture itself. Qualified names, so a user
# function called write() is never mistaken for one
OUTPUT_FRAME_NAMES = frozenset({"OutputCapturer.write", "OutputCapturer.flush"})

RESERVED_KEYS = ("__name__", "__builtins__")
COUNTER_ANNOTATION = "imported class Counter"


def is_system_name(name):
    return name.startswith("__") or name in SYSTEM_NAMES


def filter_frame(frame):
    variables = {name: value for name, value in frame.variables.items() if not is_system_name(name)}
    return Frame(name=frame.name, variables=variables)


def filter_heap(heap):
    # Module namespaces leaking into the heap show up as dicts keyed by __name__/__builtins__
    return {
        heap_id: entry for heap_id, entry in heap.items()
        if not (isinstance(entry, DictEntry) and any(key in entry.value for key in RESERVED_KEYS))
    }


def is_internal_step(snapshot):
    return snapshot.frame.name in OUTPUT_FRAME_NAMES


def clean(snapshot):
    stack = [filter_frame(frame) for frame in snapshot.stack]
    frame = stack[-1] if stack else filter_frame(snapshot.frame)
    return snapshot.model_copy(update={"frame": frame, "stack": stack, "heap": filter_heap(snapshot.heap)})


def annotate_counters(heap):
    return {
        heap_id: entry.model_copy(update={"annotation": COUNTER_ANNOTATION}) if isinstance(entry, CounterEntry) else entry
        for heap_id, entry in heap.items()
    }


def process(raw_snapshots, final_output, fallback=None):
    """Turn the raw snapshots of one run into the trace shown to the user.

    ``fallback`` is used when nothing was captured; it goes through the same
    filtering as every other step. The result always has at least two steps
    and every step carries ``final_output``.
    """
    steps = [clean(snapshot) for snapshot in raw_snapshots if not is_internal_step(snapshot)]
    dropped = len(raw_snapshots) - len(steps)
    if dropped:
        logger.debug("Dropped %d internal steps", dropped)

    if not steps:
        steps = [clean(fallback if fallback is not None else Snapshot())]

    steps = [
        step.model_copy(update={"heap": annotate_counters(step.heap), "output": final_output})
        for step in steps
    ]

    if len(steps) == 1:
        steps.append(steps[0].model_copy(deep=True))
    return steps

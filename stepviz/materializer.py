import re
import types
from collections import Counter

from .models import (
    CounterEntry,
    DictEntry,
    FunctionEntry,
    ListEntry,
    PrimitiveValue,
    ReferenceValue,
)


def safe_str(value):
    try:
        return str(value)
    except Exception:
        return f"<{type(value).__name__} object>"


class ObjectMaterializer:
    """Turns live values into value descriptors, registering compound values on a heap.

    One materializer lives for the whole run. It remembers which heap id it
    gave to each live object, so the same list seen at two different steps
    keeps its id while two equal-but-distinct lists get two ids. Objects are
    pinned for the lifetime of the run so that ``id()`` values cannot be
    recycled to a different object.
    """

    def __init__(self):
        self.next_heap_id = 1
        self._ids = {}
        self._pinned = []

    def new_heap_id(self):
        heap_id = f"id{self.next_heap_id}"
        self.next_heap_id += 1
        return heap_id

    def heap_id_for(self, value):
        key = id(value)
        if key not in self._ids:
            self._ids[key] = self.new_heap_id()
            self._pinned.append(value)
        return self._ids[key]

    def materialize(self, value, heap, name=None):
        """Return a descriptor for ``value``; compound values are added to ``heap``."""
        if isinstance(value, types.ModuleType):
            return PrimitiveValue(value=f"<module '{value.__name__}'>")
        if value is None:
            return PrimitiveValue(value="None")
        # bool is an int subclass; str() already gives "True"/"False"
        if isinstance(value, (bool, int, float, complex)):
            return PrimitiveValue(value=str(value))
        if isinstance(value, str):
            return PrimitiveValue(value=value)

        # Counter must be checked before dict, it is a dict subclass
        if isinstance(value, Counter):
            return self._materialize_counter(value, heap, name)
        if isinstance(value, (list, tuple)):
            return self._materialize_sequence(value, heap)
        if isinstance(value, dict):
            return self._materialize_dict(value, heap)

        if isinstance(value, re.Pattern):
            return PrimitiveValue(value=f"regex: {value.pattern}")
        if hasattr(value, "__iter__") and hasattr(value, "__next__"):
            return PrimitiveValue(value="iterator")
        if callable(value):
            return self._materialize_function(value, heap)

        return PrimitiveValue(value=safe_str(value))

    def _materialize_sequence(self, value, heap):
        heap_id = self.heap_id_for(value)
        if heap_id in heap:
            # Already registered in this snapshot (shared or self-referencing)
            return ReferenceValue(id=heap_id)
        entry = ListEntry(object_type="tuple" if isinstance(value, tuple) else "list")
        heap[heap_id] = entry
        for item in value:
            entry.elements.append(self.materialize(item, heap))
        return ReferenceValue(id=heap_id)

    def _materialize_dict(self, value, heap):
        heap_id = self.heap_id_for(value)
        if heap_id not in heap:
            heap[heap_id] = DictEntry(value={safe_str(k): self.flatten(v) for k, v in value.items()})
        return ReferenceValue(id=heap_id)

    def _materialize_counter(self, value, heap, name=None):
        # Distinct instances must stay distinct boxes even with equal counts,
        # so a Counter never goes through the identity map.
        heap_id = self.new_heap_id()
        self._pinned.append(value)
        heap[heap_id] = CounterEntry(
            value={safe_str(k): safe_str(v) for k, v in value.items()},
            annotation=f"Counter for {name}" if name else "Counter object",
            object_id=id(value),
        )
        return ReferenceValue(id=heap_id)

    def _materialize_function(self, value, heap):
        heap_id = self.heap_id_for(value)
        if heap_id not in heap:
            name = getattr(value, "__name__", type(value).__name__)
            heap[heap_id] = FunctionEntry(name=name, value=function_signature(value, name))
        return ReferenceValue(id=heap_id)

    def flatten(self, value):
        """String form used for dict values."""
        return safe_str(value)


def function_signature(func, name):
    try:
        code = func.__code__
        params = code.co_varnames[:code.co_argcount]
    except AttributeError:
        return name
    return f"{name}({', '.join(params)})"

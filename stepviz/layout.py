"""Layout engine: places frames, heap objects and connectors for one snapshot.

``layout(snapshot)`` is a pure function of the snapshot and a
:class:`~stepviz.config.LayoutConfig`; it never touches a drawing surface,
so every coordinate it produces can be asserted on directly.

Heap objects referenced from frame variables are placed with a two-column
heuristic keyed on the variable's ordinal: lists whose ordinal is a multiple
of ``group_size`` go to the left column, the others to a right column,
staggered vertically. Objects referenced from inside a list are placed to the
right of their parent, one level deeper, down to ``max_depth``; anything
deeper is left out. Each heap id is placed once, later references only add
connectors, which also makes self-referencing structures terminate.
"""

import math
from typing import Literal

from pydantic import Field

from .config import LayoutConfig
from .models import (
    GLOBAL_FRAME,
    CamelModel,
    CounterEntry,
    DictEntry,
    FunctionEntry,
    ListEntry,
    PrimitiveValue,
    ReferenceValue,
    Snapshot,
)

IMPORT_ERROR_MARKER = "not found or not supported"

LEGEND_LINES = [
    "Visual Indicators for References:",
    "[] - Represents a reference to a nested list",
    "{} - Represents a reference to a dictionary",
    "fn - Represents a reference to a function",
]


class Point(CamelModel):
    x: float
    y: float


class VariableRow(CamelModel):
    name: str
    y: float
    kind: Literal["primitive", "reference"]
    text: str
    value_width: float = 0
    heap_id: str | None = None


class FramePlacement(CamelModel):
    id: str
    name: str
    x: float
    y: float
    width: float
    height: float
    left_column_width: float
    highlighted: bool = False
    rows: list[VariableRow] = Field(default_factory=list)


class CellPlacement(CamelModel):
    index: int
    x: float
    y: float
    width: float
    height: float
    text: str
    heap_id: str | None = None


class ObjectPlacement(CamelModel):
    heap_id: str
    type: Literal["list", "dict", "Counter", "function"]
    x: float
    y: float
    width: float
    height: float
    level: int
    label: str
    text: str = ""
    annotation: str | None = None
    cells: list[CellPlacement] = Field(default_factory=list)


class ConnectorPlacement(CamelModel):
    kind: Literal["elbow", "curve"]
    # Frame placement id ("frame0"...) or heap id of the containing object
    source_id: str
    heap_id: str
    source: Point
    target: Point
    # Elbow: the two corner points. Curve: the quadratic control point.
    points: list[Point] = Field(default_factory=list)
    level: int = 0
    path: str


class NotePlacement(CamelModel):
    kind: Literal["list-info", "legend"]
    x: float
    y: float
    width: float
    height: float
    lines: list[str]


class ErrorPlacement(CamelModel):
    x: float
    y: float
    width: float
    height: float
    title: str
    lines: list[str]


class Layout(CamelModel):
    frames: list[FramePlacement] = Field(default_factory=list)
    objects: list[ObjectPlacement] = Field(default_factory=list)
    connectors: list[ConnectorPlacement] = Field(default_factory=list)
    notes: list[NotePlacement] = Field(default_factory=list)
    error: ErrorPlacement | None = None
    width: float = 0
    height: float = 0
    margin_left: float = 0
    margin_top: float = 0


def indicator(entry):
    if isinstance(entry, ListEntry):
        return "[]"
    if isinstance(entry, (DictEntry, CounterEntry)):
        return "{}"
    if isinstance(entry, FunctionEntry):
        return "fn"
    return "?"


def frame_id(index):
    return f"frame{index}"


def fmt(value):
    return f"{round(value, 2):g}"


def frame_height(variable_count, config):
    return max(config.frame_min_height, 40 + variable_count * config.frame_line_height)


def frame_width(variables, config):
    """Return (total width, name column width); both grow with the longest name and primitive value."""
    base_left = config.frame_width * 0.4
    max_name = max((len(name) for name in variables), default=0)
    max_value = max(
        (len(value.value) for value in variables.values() if isinstance(value, PrimitiveValue)),
        default=0,
    )
    left_adjust = (max_name - 8) * 8 if max_name > 8 else 0
    right_adjust = (max_value - 10) * 10 if max_value > 10 else 0
    return config.frame_width + left_adjust + right_adjust, base_left + left_adjust


def heap_object_position(index, type_, config):
    """Position of an object referenced by the ``index``-th frame variable."""
    top = config.margin_top + config.heap_top
    if type_ == "list":
        if index % config.group_size != 0:
            return Point(
                x=config.heap_start_x + config.child_column_offset,
                y=top + index * config.vertical_gap / 2,
            )
        return Point(x=config.heap_start_x, y=top + (index // config.group_size) * config.vertical_gap)
    if type_ == "dict":
        return Point(x=config.heap_start_x, y=top + index * config.vertical_gap)
    return Point(x=config.heap_start_x + config.other_column_offset, y=top + index * config.vertical_gap / 2)


def elbow_connector(source_id, heap_id, source, target, config):
    mid_x = source.x + config.elbow_offset
    corners = [Point(x=mid_x, y=source.y), Point(x=mid_x, y=target.y)]
    path = (
        f"M{fmt(source.x)},{fmt(source.y)}L{fmt(mid_x)},{fmt(source.y)}"
        f"L{fmt(mid_x)},{fmt(target.y)}L{fmt(target.x)},{fmt(target.y)}"
    )
    return ConnectorPlacement(
        kind="elbow", source_id=source_id, heap_id=heap_id, source=source, target=target,
        points=corners, path=path,
    )


def curve_connector(source_id, heap_id, source, target, index, level, config):
    """Quadratic curve bent away from the straight line; siblings fan out by index, deeper levels bend less."""
    dx = target.x - source.x
    dy = target.y - source.y
    dist = math.hypot(dx, dy)
    if dist > 0:
        norm_x, norm_y = -dy / dist, dx / dist
    else:
        norm_x, norm_y = 0.0, 1.0
    offset = (index - 1) * config.curve_factor / max(level, 1)
    control = Point(x=source.x + dx / 2 + norm_x * offset, y=source.y + dy / 2 + norm_y * offset)
    path = f"M{fmt(source.x)},{fmt(source.y)}Q{fmt(control.x)},{fmt(control.y)},{fmt(target.x)},{fmt(target.y)}"
    return ConnectorPlacement(
        kind="curve", source_id=source_id, heap_id=heap_id, source=source, target=target,
        points=[control], level=level, path=path,
    )


def format_mapping(value, counter=False):
    body = ", ".join(f"{key}: {item}" for key, item in value.items())
    return f"Counter({{{body}}})" if counter else f"{{{body}}}"


def collect_list_info(frames, heap):
    seen = {}
    for frame in frames:
        for name, value in frame.variables.items():
            entry = heap.get(value.id) if isinstance(value, ReferenceValue) else None
            if isinstance(entry, ListEntry) and name not in seen:
                seen[name] = len(entry.elements)
    return [f"{name} size: {size}" for name, size in seen.items()]


def overlaps(a, x, y, width, height):
    return a.x < x + width and x < a.x + a.width and a.y < y + height and y < a.y + a.height


class _LayoutBuilder:
    def __init__(self, heap, config):
        self.heap = heap
        self.config = config
        self.placed = {}
        self.objects = []
        self.connectors = []

    def free_spot(self, x, y, width, height):
        # Push down until the box no longer overlaps an object already placed
        step = max(self.config.vertical_gap / 2, 1)
        while any(overlaps(other, x, y, width, height) for other in self.objects):
            y += step
        return y

    def place(self, heap_id, x, y, level):
        if heap_id in self.placed:
            return self.placed[heap_id]
        entry = self.heap[heap_id]
        config = self.config

        if isinstance(entry, ListEntry):
            width = max(len(entry.elements), 1) * config.cell_size
            y = self.free_spot(x, y, width, config.cell_height)
            placement = ObjectPlacement(
                heap_id=heap_id, type="list", x=x, y=y, width=width, height=config.cell_height,
                level=level, label=entry.object_type,
            )
        elif isinstance(entry, (DictEntry, CounterEntry)):
            is_counter = isinstance(entry, CounterEntry)
            text = format_mapping(entry.value, counter=is_counter)
            width = max(config.dict_min_width, len(text) * config.char_width + 2 * config.dict_padding)
            y = self.free_spot(x, y, width, config.cell_height)
            placement = ObjectPlacement(
                heap_id=heap_id, type=entry.type, x=x, y=y, width=width, height=config.cell_height,
                level=level, label="Counter instance" if is_counter else "dict", text=text,
                annotation=entry.annotation if is_counter else None,
            )
        else:
            # Function boxes are drawn around the text origin, 5px of padding on each side
            width = len(entry.value) * 8 + 20
            box_y = self.free_spot(x - 5, y - 5, width, config.function_height)
            placement = ObjectPlacement(
                heap_id=heap_id, type="function", x=x - 5, y=box_y, width=width, height=config.function_height,
                level=level, label="function", text=entry.value,
            )

        self.placed[heap_id] = placement
        self.objects.append(placement)
        if isinstance(entry, ListEntry):
            self.place_cells(placement, entry)
        return placement

    def place_cells(self, parent, entry):
        config = self.config
        for index, element in enumerate(entry.elements):
            cell_x = parent.x + index * config.cell_size
            cell = CellPlacement(
                index=index, x=cell_x, y=parent.y, width=config.cell_size, height=config.cell_height, text="",
            )
            parent.cells.append(cell)
            if isinstance(element, PrimitiveValue):
                cell.text = element.value if element.value != "" else '""'
                continue
            child = self.heap.get(element.id)
            if child is None:
                continue
            cell.text = indicator(child)
            cell.heap_id = element.id
            if parent.level >= config.max_depth:
                continue

            ref_x = parent.x + len(entry.elements) * config.cell_size + config.horizontal_offset
            ref_y = parent.y + index * config.vertical_gap
            target = self.place(element.id, ref_x, ref_y, parent.level + 1)
            target_x = target.x + config.dict_min_width / 2 if target.type in ("dict", "Counter") else target.x
            self.connectors.append(curve_connector(
                parent.heap_id,
                element.id,
                Point(x=cell_x + config.cell_size / 2, y=parent.y + config.cell_height / 2),
                Point(x=target_x, y=target.y),
                index,
                parent.level + 1,
                config,
            ))


def error_layout(snapshot, config):
    error = snapshot.error
    if IMPORT_ERROR_MARKER in error.message:
        title = "Import Error"
        lines = [
            "This code contains imports that aren't supported in this environment.",
            error.message,
            "Try modifying the code to use built-in modules only.",
        ]
    else:
        title = error.kind
        lines = [error.message]
    placement = ErrorPlacement(x=0, y=50, width=600, height=150, title=title, lines=lines)
    return Layout(
        error=placement,
        width=max(config.min_canvas_width, placement.width + config.margin_left + config.margin_right),
        height=placement.height + 100,
        margin_left=config.margin_left,
        margin_top=config.margin_top,
    )


def layout(snapshot: Snapshot, config: LayoutConfig | None = None) -> Layout:
    config = config or LayoutConfig()
    if snapshot.error is not None:
        return error_layout(snapshot, config)

    frames = snapshot.frames
    builder = _LayoutBuilder(snapshot.heap, config)
    list_info = collect_list_info(frames, snapshot.heap)
    placements = []
    notes = []
    current_y = 0
    ordinal = 0

    for frame_index, frame in enumerate(frames):
        height = frame_height(len(frame.variables), config)
        width, left = frame_width(frame.variables, config)
        placement = FramePlacement(
            id=frame_id(frame_index), name=frame.name, x=0, y=current_y, width=width, height=height,
            left_column_width=left, highlighted=frame_index == len(frames) - 1,
        )

        for index, (name, value) in enumerate(frame.variables.items()):
            row_y = current_y + 45 + index * config.frame_line_height
            if isinstance(value, PrimitiveValue):
                text = value.value if value.value != "" else '""'
                placement.rows.append(VariableRow(
                    name=name, y=row_y, kind="primitive", text=text, value_width=len(text) * 8 + 10,
                ))
            elif value.id in snapshot.heap:
                entry = snapshot.heap[value.id]
                position = heap_object_position(ordinal, entry.type, config)
                target = builder.place(value.id, position.x, position.y, 0)
                placement.rows.append(VariableRow(
                    name=name, y=row_y, kind="reference", text=indicator(entry), value_width=30, heap_id=value.id,
                ))
                builder.connectors.append(elbow_connector(
                    frame_id(frame_index),
                    value.id,
                    Point(x=left + 25, y=row_y + 22),
                    Point(x=target.x, y=target.y + 10),
                    config,
                ))
            ordinal += 1

        placements.append(placement)
        current_y += height + config.frame_gap

        if frame.name == GLOBAL_FRAME and list_info:
            text = " | ".join(list_info)
            notes.append(NotePlacement(
                kind="list-info", x=0, y=current_y, width=max(len(text) * 5.5 + 40, width * 0.8),
                height=config.info_height, lines=[text],
            ))
            current_y += config.info_height + 20
            legend_y = current_y + config.legend_offset
            notes.append(NotePlacement(
                kind="legend", x=0, y=legend_y, width=config.legend_width,
                height=config.legend_height, lines=list(LEGEND_LINES),
            ))
            current_y = legend_y + config.legend_height + 30

    right = max([p.x + p.width for p in placements + builder.objects] + [n.x + n.width for n in notes], default=0)
    bottom = max([current_y] + [o.y + o.height for o in builder.objects])
    return Layout(
        frames=placements,
        objects=builder.objects,
        connectors=builder.connectors,
        notes=notes,
        width=max(config.min_canvas_width, right + config.margin_left + config.margin_right),
        height=max(config.min_canvas_height, bottom + config.margin_top + config.margin_bottom + 50),
        margin_left=config.margin_left,
        margin_top=config.margin_top,
    )

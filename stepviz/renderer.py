"""SVG renderer for a computed :class:`~stepviz.layout.Layout`.

The diagram is expressed as a graphviz graph whose nodes and edges carry the
coordinates chosen by the layout engine (``pos`` attributes), and is rendered
with ``neato -n2`` so graphviz draws everything exactly where it was placed
instead of running its own layout.
"""

import html
import logging
import math
import re

import graphviz

logger = logging.getLogger(__name__)

PALETTE = {
    "frame": {"background": "#F3F8FF", "border": "#DBEAFE", "title": "#1E40AF", "header": "#DBEAFE"},
    "list": {"background": "#EFF6FF", "border": "#BFDBFE", "text": "#1E40AF"},
    "dict": {"background": "#F0FDF4", "border": "#BBFCD4", "text": "#047857"},
    "function": {"background": "#F5F3FF", "border": "#DDD6FE", "text": "#5B21B6"},
    "primitive": {"background": "#FFFBEB", "border": "#FEF3C7", "text": "#92400E"},
    "error": {"background": "#FEF2F2", "border": "#FEE2E2", "title": "#DC2626", "text": "#EF4444"},
    "info": {"background": "#EFF6FF", "border": "#DBEAFE", "text": "#1D4ED8"},
    "counter_highlight": "#60A5FA",
    "connector": "#3B82F6",
    "arrow": "#2563EB",
    "index": "#6B7280",
}

ARROW_LENGTH = 8
INDEX_ROW_HEIGHT = 14

ANIMATION_CSS = """
.frame { animation: stepviz-fade-in 300ms ease-in both; }
.connector path { stroke-dasharray: 1000; stroke-dashoffset: 1000; animation: stepviz-draw-in 500ms linear forwards; }
@keyframes stepviz-fade-in { from { opacity: 0; } to { opacity: 1; } }
@keyframes stepviz-draw-in { to { stroke-dashoffset: 0; } }
"""


def _num(value):
    return f"{round(value, 2):g}"


def _inches(pixels):
    return _num(pixels / 72.0)


def _text(value):
    return html.escape(str(value), quote=True)


class Renderer:
    """Builds the graphviz description of a layout and renders it to SVG."""

    def __init__(self, palette=None):
        self.palette = palette or PALETTE

    # --- coordinates ---

    def _point(self, layout, x, y):
        # Layout space is y-down inside the margins; graphviz is y-up
        return layout.margin_left + x, layout.height - (layout.margin_top + y)

    def _pos(self, layout, x, y, width, height):
        cx, cy = self._point(layout, x + width / 2, y + height / 2)
        return f"{_num(cx)},{_num(cy)}!"

    def _box(self, graph, layout, name, x, y, width, height, **attrs):
        graph.node(
            name,
            pos=self._pos(layout, x, y, width, height),
            width=_inches(width),
            height=_inches(height),
            fixedsize="true",
            **attrs,
        )

    # --- graph construction ---

    def build(self, layout):
        graph = graphviz.Digraph("stepviz", engine="neato")
        graph.attr(
            "graph",
            splines="true",
            outputorder="edgesfirst",
            bgcolor="white",
            pad="0",
            bb=f"0,0,{_num(layout.width)},{_num(layout.height)}",
        )
        graph.attr("node", fontname="monospace", fontsize="12", margin="0")
        graph.attr(
            "edge",
            color=self.palette["connector"],
            fillcolor=self.palette["arrow"],
            penwidth="1.5",
            arrowsize="0.7",
        )

        # An error step shows only the error panel
        if layout.error is not None:
            self.draw_error(graph, layout)
            return graph

        for frame in layout.frames:
            self.draw_frame(graph, layout, frame)
        for placement in layout.objects:
            if placement.type == "list":
                self.draw_list(graph, layout, placement)
            elif placement.type in ("dict", "Counter"):
                self.draw_mapping(graph, layout, placement)
            elif placement.type == "function":
                self.draw_function(graph, layout, placement)
        for note in layout.notes:
            self.draw_note(graph, layout, note)
        for connector in layout.connectors:
            self.draw_connector(graph, layout, connector)
        return graph

    def draw_frame(self, graph, layout, frame):
        colors = self.palette["frame"]
        rows = [
            f'<TR><TD COLSPAN="2" ALIGN="LEFT" HEIGHT="35" BGCOLOR="{colors["header"]}">'
            f'<FONT COLOR="{colors["title"]}"><B>{_text(frame.name)}</B></FONT></TD></TR>'
        ]
        for row in frame.rows:
            value_color = self.palette["primitive"]["text"] if row.kind == "primitive" else self.palette["list"]["text"]
            rows.append(
                f'<TR><TD ALIGN="LEFT" WIDTH="{int(frame.left_column_width)}" HEIGHT="30">{_text(row.name)}</TD>'
                f'<TD ALIGN="LEFT" PORT="{_text(row.name)}"><FONT COLOR="{value_color}">{_text(row.text)}</FONT></TD></TR>'
            )
        label = (
            f'<<TABLE BORDER="1" CELLBORDER="0" CELLSPACING="0" CELLPADDING="4" COLOR="{colors["border"]}" '
            f'BGCOLOR="{colors["background"]}" STYLE="ROUNDED">{"".join(rows)}</TABLE>>'
        )
        self._box(
            graph, layout, frame.id, frame.x, frame.y, frame.width, frame.height,
            shape="none", label=label, **{"class": "frame"},
        )

    def draw_list(self, graph, layout, placement):
        colors = self.palette["list"]
        cell_width = int(placement.width / max(len(placement.cells), 1))
        indexes = "".join(
            f'<TD BORDER="0" HEIGHT="{INDEX_ROW_HEIGHT}"><FONT POINT-SIZE="9" COLOR="{self.palette["index"]}">{cell.index}</FONT></TD>'
            for cell in placement.cells
        )
        values = "".join(
            f'<TD WIDTH="{cell_width}" HEIGHT="{int(placement.height)}" BGCOLOR="{colors["background"]}" '
            f'COLOR="{colors["border"]}"><FONT COLOR="{colors["text"]}">{_text(cell.text)}</FONT></TD>'
            for cell in placement.cells
        ) or f'<TD WIDTH="{cell_width}" HEIGHT="{int(placement.height)}" COLOR="{colors["border"]}"> </TD>'
        label = (
            f'<<TABLE BORDER="0" CELLBORDER="1" CELLSPACING="0" CELLPADDING="2">'
            f'<TR>{indexes}</TR><TR>{values}</TR></TABLE>>'
        )
        # The index row sits above the cells
        self._box(
            graph, layout, placement.heap_id, placement.x, placement.y - INDEX_ROW_HEIGHT,
            placement.width, placement.height + INDEX_ROW_HEIGHT,
            shape="none", label=label, xlabel=placement.label, fontcolor=colors["text"],
        )

    def draw_mapping(self, graph, layout, placement):
        colors = self.palette["dict"]
        attrs = {
            "shape": "box",
            "style": "rounded,filled",
            "fillcolor": colors["background"],
            "color": colors["border"],
            "fontcolor": colors["text"],
            "label": graphviz.escape(placement.text),
            "xlabel": graphviz.escape(placement.label),
        }
        if placement.type == "Counter":
            attrs["style"] = "rounded,filled,dashed"
            attrs["color"] = self.palette["counter_highlight"]
            attrs["penwidth"] = "2"
            if placement.annotation:
                attrs["xlabel"] = graphviz.nohtml(f"{placement.annotation}\\n{placement.label}")
        self._box(graph, layout, placement.heap_id, placement.x, placement.y, placement.width, placement.height, **attrs)

    def draw_function(self, graph, layout, placement):
        colors = self.palette["function"]
        self._box(
            graph, layout, placement.heap_id, placement.x, placement.y, placement.width, placement.height,
            shape="box", style="rounded,filled", fillcolor=colors["background"], color=colors["border"],
            fontcolor=colors["text"], label=graphviz.escape(placement.text),
        )

    def draw_note(self, graph, layout, note):
        colors = self.palette["info"] if note.kind == "list-info" else self.palette["function"]
        lines = "".join(f'<TR><TD ALIGN="LEFT">{_text(line)}</TD></TR>' for line in note.lines)
        label = f'<<TABLE BORDER="0" CELLBORDER="0" CELLSPACING="0" CELLPADDING="2">{lines}</TABLE>>'
        self._box(
            graph, layout, f"note-{note.kind}", note.x, note.y, note.width, note.height,
            shape="box", style="rounded,filled", fillcolor=colors["background"], color=colors["border"],
            fontcolor=colors["text"], fontname="sans-serif", label=label,
        )

    def draw_error(self, graph, layout):
        error = layout.error
        colors = self.palette["error"]
        lines = "".join(
            f'<TR><TD ALIGN="LEFT"><FONT COLOR="{colors["text"]}">{_text(line)}</FONT></TD></TR>'
            for line in error.lines
        )
        label = (
            f'<<TABLE BORDER="0" CELLBORDER="0" CELLSPACING="4">'
            f'<TR><TD ALIGN="LEFT"><FONT POINT-SIZE="16" COLOR="{colors["title"]}"><B>{_text(error.title)}</B></FONT></TD></TR>'
            f'{lines}</TABLE>>'
        )
        self._box(
            graph, layout, "error", error.x, error.y, error.width, error.height,
            shape="box", style="rounded,filled", fillcolor=colors["background"], color=colors["border"],
            penwidth="2", fontname="sans-serif", label=label, **{"class": "error"},
        )

    def draw_connector(self, graph, layout, connector):
        graph.edge(
            connector.source_id,
            connector.heap_id,
            pos=self.spline(layout, connector),
            **{"class": f"connector {connector.kind}"},
        )

    # --- connector geometry ---

    def spline(self, layout, connector):
        """Connector path as a graphviz spline: cubic bezier points plus an arrowhead end point."""
        if connector.kind == "elbow":
            corners = [connector.source, *connector.points, connector.target]
            points = [(corners[0].x, corners[0].y)]
            for a, b in zip(corners, corners[1:]):
                points += [
                    (a.x + (b.x - a.x) / 3, a.y + (b.y - a.y) / 3),
                    (a.x + 2 * (b.x - a.x) / 3, a.y + 2 * (b.y - a.y) / 3),
                    (b.x, b.y),
                ]
        else:
            # Degree elevation of the quadratic curve
            s, c, t = connector.source, connector.points[0], connector.target
            points = [
                (s.x, s.y),
                (s.x + 2 * (c.x - s.x) / 3, s.y + 2 * (c.y - s.y) / 3),
                (t.x + 2 * (c.x - t.x) / 3, t.y + 2 * (c.y - t.y) / 3),
                (t.x, t.y),
            ]

        # Pull the last point back so the arrowhead ends on the target
        end = points[-1]
        before = next((p for p in reversed(points[:-1]) if p != end), points[0])
        dx, dy = end[0] - before[0], end[1] - before[1]
        length = math.hypot(dx, dy)
        if length > ARROW_LENGTH:
            points[-1] = (end[0] - dx / length * ARROW_LENGTH, end[1] - dy / length * ARROW_LENGTH)

        def coords(point):
            x, y = self._point(layout, *point)
            return f"{_num(x)},{_num(y)}"

        return f"e,{coords(end)} " + " ".join(coords(p) for p in points)

    # --- output ---

    def render_svg(self, layout, animate=False):
        svg = self.build(layout).pipe(format="svg", neato_no_op=2, encoding="utf-8")
        if animate:
            svg = inject_style(svg, ANIMATION_CSS)
        return svg


def inject_style(svg, css):
    """Insert a <style> block right after the opening <svg> tag."""
    match = re.search(r"<svg\b[^>]*>", svg)
    if match is None:
        logger.warning("Rendered output has no <svg> element; animation skipped")
        return svg
    return f"{svg[:match.end()]}\n<style>{css}</style>{svg[match.end():]}"

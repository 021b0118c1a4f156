"""Configuration read from the environment, plus the fixed import allow-list and layout geometry."""

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel

ALLOWED_MODULES = (
    "__future__", "abc", "array", "bisect", "calendar", "cmath", "collections",
    "copy", "datetime", "decimal", "doctest", "fractions", "functools",
    "hashlib", "heapq", "io", "itertools", "json", "locale", "math",
    "operator", "pickle", "pprint", "random", "re", "string", "types",
    "typing", "unittest",
)

# Shown in the error panel and the rejection message
ALLOWED_MODULES_TEXT = ", ".join(name.replace("__future__", "**future**") for name in ALLOWED_MODULES)


class Settings(BaseModel):
    gemini_api_key: str | None = None
    model: str = "gemini-1.5-flash"
    max_steps: int = 1000
    debounce_seconds: float = 1.0
    cors_origins: list[str] = ["*"]
    log_level: str = "INFO"

    @property
    def api_key_configured(self) -> bool:
        return bool(self.gemini_api_key)


def load_settings() -> Settings:
    load_dotenv()
    origins = os.getenv("STEPVIZ_CORS_ORIGINS", "*")
    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
        model=os.getenv("STEPVIZ_MODEL", "gemini-1.5-flash"),
        max_steps=int(os.getenv("STEPVIZ_MAX_STEPS", "1000")),
        debounce_seconds=float(os.getenv("STEPVIZ_DEBOUNCE_SECONDS", "1.0")),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        log_level=os.getenv("STEPVIZ_LOG_LEVEL", "INFO"),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class LayoutConfig(BaseModel):
    """Static geometry used by the layout engine. All values are in pixels."""

    # Frames
    frame_line_height: int = 30
    frame_width: int = 220
    frame_header_height: int = 35
    frame_min_height: int = 70
    frame_gap: int = 30

    # Heap objects
    heap_start_x: int = 380
    heap_top: int = 60
    vertical_gap: int = 90
    horizontal_offset: int = 250
    child_column_offset: int = 220
    other_column_offset: int = 100
    group_size: int = 10
    cell_size: int = 100
    cell_height: int = 35
    dict_min_width: int = 370
    dict_padding: int = 10
    char_width: float = 7.7
    function_height: int = 24
    max_depth: int = 3

    # Connectors
    elbow_offset: int = 40
    curve_factor: int = 100

    # Canvas
    margin_top: int = 15
    margin_right: int = 40
    margin_bottom: int = 30
    margin_left: int = 40
    min_canvas_width: int = 900
    min_canvas_height: int = 500

    # Informational elements under the global frame
    info_height: int = 24
    legend_width: int = 300
    legend_height: int = 84
    legend_offset: int = 10

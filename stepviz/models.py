"""Trace data model: snapshots, frames, value descriptors and heap entries.

Every model serializes with camelCase aliases (``currentLine``,
``objectType``...) so the JSON handed to clients matches the wire format the
visualizer front end consumes.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

GLOBAL_FRAME = "Global frame"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# --- Value descriptors ---

class PrimitiveValue(CamelModel):
    type: Literal["primitive"] = "primitive"
    value: str


class ReferenceValue(CamelModel):
    type: Literal["reference"] = "reference"
    id: str


ValueDescriptor = Annotated[Union[PrimitiveValue, ReferenceValue], Field(discriminator="type")]


# --- Heap entries ---

class ListEntry(CamelModel):
    type: Literal["list"] = "list"
    object_type: Literal["list", "tuple"] = "list"
    elements: list[ValueDescriptor] = Field(default_factory=list)


class DictEntry(CamelModel):
    # Values are stringified eagerly; nested containers are not kept as references.
    type: Literal["dict"] = "dict"
    value: dict[str, str] = Field(default_factory=dict)


class CounterEntry(CamelModel):
    type: Literal["Counter"] = "Counter"
    value: dict[str, str] = Field(default_factory=dict)
    annotation: str = "Counter object"
    object_id: int = 0


class FunctionEntry(CamelModel):
    type: Literal["function"] = "function"
    name: str
    value: str


HeapEntry = Annotated[
    Union[ListEntry, DictEntry, CounterEntry, FunctionEntry],
    Field(discriminator="type"),
]

Heap = dict[str, HeapEntry]


# --- Frames and snapshots ---

class Frame(CamelModel):
    name: str = GLOBAL_FRAME
    variables: dict[str, ValueDescriptor] = Field(default_factory=dict)


class ErrorInfo(CamelModel):
    kind: str
    message: str

    @property
    def text(self) -> str:
        return f"{self.kind}: {self.message}"


class Snapshot(CamelModel):
    frame: Frame = Field(default_factory=Frame)
    # Every user frame, outermost first; the last one is ``frame``.
    stack: list[Frame] = Field(default_factory=list)
    heap: dict[str, HeapEntry] = Field(default_factory=dict)
    output: str = ""
    current_line: int = 1
    error: ErrorInfo | None = None

    @property
    def frames(self) -> list[Frame]:
        return self.stack or [self.frame]

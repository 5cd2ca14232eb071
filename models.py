# slide_service/models.py
from typing import Any, Dict, List, Literal, Optional, Union

from pptx.util import Inches
from pydantic import BaseModel, Field

PPTX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

Layout = Literal["LAYOUT_16x9", "LAYOUT_16x10", "LAYOUT_4x3", "LAYOUT_WIDE"]

DEFAULT_LAYOUT = "LAYOUT_16x9"

# Canvas sizes (EMU) for the supported layouts
LAYOUT_SIZES = {
    "LAYOUT_16x9": (Inches(10), Inches(5.625)),
    "LAYOUT_16x10": (Inches(10), Inches(6.25)),
    "LAYOUT_4x3": (Inches(10), Inches(7.5)),
    "LAYOUT_WIDE": (Inches(13.333), Inches(7.5)),
}


# --- Request Models ---
class PresentationRequest(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    subject: Optional[str] = None
    company: Optional[str] = None
    layout: Optional[Layout] = None
    # Slides stay loosely typed; each entry is normalized during the build.
    slides: List[Any] = Field(default_factory=list)


class Canvas(BaseModel):
    width: int
    height: int

    @classmethod
    def for_layout(cls, layout: Optional[str]) -> "Canvas":
        width, height = LAYOUT_SIZES.get(layout or DEFAULT_LAYOUT, LAYOUT_SIZES[DEFAULT_LAYOUT])
        return cls(width=int(width), height=int(height))


class RenderedArtifact(BaseModel):
    content: bytes
    filename: str
    media_type: str = PPTX_MEDIA_TYPE


# --- Canonical Elements ---
# Every accepted JSON shape is normalized into exactly one of these.
class PlacedElement(BaseModel):
    # Geometry in EMU; None lets the renderer use the natural size.
    x: int = 0
    y: int = 0
    w: Optional[int] = None
    h: Optional[int] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class TextElement(PlacedElement):
    kind: Literal["text"] = "text"
    text: str


class Paragraph(BaseModel):
    text: str
    bullet: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)


class RichTextElement(PlacedElement):
    kind: Literal["rich_text"] = "rich_text"
    paragraphs: List[Paragraph]


class TableCell(BaseModel):
    text: str = ""
    options: Dict[str, Any] = Field(default_factory=dict)


class TableElement(PlacedElement):
    kind: Literal["table"] = "table"
    rows: List[List[TableCell]]
    col_widths: Optional[List[int]] = None


class ImageElement(PlacedElement):
    kind: Literal["image"] = "image"
    source: str


class ShapeElement(PlacedElement):
    kind: Literal["shape"] = "shape"
    shape: str = "rect"
    text: Optional[str] = None


class RectElement(PlacedElement):
    kind: Literal["rect"] = "rect"


class ChartSeries(BaseModel):
    name: str
    labels: List[str]
    values: List[float]


class ChartElement(PlacedElement):
    kind: Literal["chart"] = "chart"
    chart_type: str
    series: List[ChartSeries]


class MediaElement(PlacedElement):
    kind: Literal["media"] = "media"
    media_type: Literal["video", "audio", "online"]
    source: Optional[str] = None
    link: Optional[str] = None
    cover: Optional[str] = None


class UnrecognizedElement(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"
    reason: str


SlideElement = Union[
    TextElement, RichTextElement, TableElement, ImageElement, ShapeElement,
    RectElement, ChartElement, MediaElement, UnrecognizedElement
]

ELEMENT_KINDS = ("text", "rich_text", "table", "image", "shape", "rect", "chart", "media", "unrecognized")

import io

import pytest
from pptx import Presentation

from models import Canvas

# 1x1 transparent PNG
PNG_BASE64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
PNG_DATA_REFERENCE = f"image/png;base64,{PNG_BASE64}"


@pytest.fixture
def canvas():
    return Canvas.for_layout("LAYOUT_16x9")


@pytest.fixture
def png_reference():
    return PNG_DATA_REFERENCE


def open_pptx(content: bytes):
    return Presentation(io.BytesIO(content))


def drawn_shapes(slide):
    """Shapes added from slide objects, i.e. everything but layout placeholders."""
    return [shape for shape in slide.shapes if not shape.is_placeholder]

import copy
import logging
import math
import re

from pptx.util import Inches

from errors import ElementRenderError
from models import (
    ChartElement, ChartSeries, ImageElement, MediaElement, Paragraph, RectElement,
    RichTextElement, ShapeElement, TableCell, TableElement, TextElement, UnrecognizedElement,
)


# --- 1. Option Defaults ---
TEXT_DEFAULTS = {"fontSize": 16, "fontFace": "Arial", "color": "000000", "align": "left", "valign": "top"}
SHAPE_DEFAULTS = {"fill": {"color": "0066CC"}, "line": {"color": "000000", "width": 1}}
TABLE_DEFAULTS = {
    "border": {"type": "solid", "color": "666666", "pt": 1},
    "fill": {"color": "F7F7F7"},
    "fontSize": 12,
}
CHART_DEFAULTS = {"legendPos": "r", "showLegend": True}

# Geometry defaults per kind, in inches or percent of the canvas.
# None means "let the renderer decide" (natural image size, table height from rows).
GEOMETRY_DEFAULTS = {
    "text": {"x": 0.5, "y": 0.5, "w": "90%", "h": 1.0},
    "table": {"x": 0.5, "y": 1.0, "w": "90%", "h": None},
    "image": {"x": 0.5, "y": 0.5, "w": None, "h": None},
    "shape": {"x": 0.5, "y": 0.5, "w": 1.0, "h": 1.0},
    "chart": {"x": 0.5, "y": 0.5, "w": 6.0, "h": 4.0},
    "media": {"x": 0.5, "y": 0.5, "w": 6.0, "h": 3.375},
}
TABLE_ROW_HEIGHT = 0.4  # inches
MIN_FONT_SIZE = 1
MAX_FONT_SIZE = 4000

BULLET_GLYPHS = ("•", "◦", "▪", "▫", "●", "○", "‣", "∙", "·")
CHART_TYPES = ("bar", "column", "line", "area", "pie", "doughnut", "radar")
MEDIA_TYPES = ("video", "audio", "online")
STYLE_KEYS = ("fill", "line", "border")
GEOMETRY_KEYS = ("x", "y", "w", "h")
SOURCE_KEYS = ("path", "url", "data")
TAGGED_KINDS = ("text", "table", "image", "rect", "shape", "chart", "media")

_HEX_COLOR = re.compile(r"^[0-9A-Fa-f]{6}$")


# --- 2. Helper Functions ---

def normalize_color(value, default=None):
    """Returns an upper-case RRGGBB string, or ``default`` if value is not a color."""
    if isinstance(value, str):
        candidate = value.strip().lstrip("#")
        if _HEX_COLOR.match(candidate):
            return candidate.upper()
    return default


def clamp_font_size(value, default=None):
    """Clamps a point size into the 1..4000 pt range PowerPoint accepts.

    Non-numeric and non-positive sizes give ``default``.
    """
    if isinstance(value, bool):
        return default
    try:
        size = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(size) or size <= 0:
        return default
    size = min(max(size, MIN_FONT_SIZE), MAX_FONT_SIZE)
    return int(size) if float(size).is_integer() else size


def _as_style_dict(value):
    if isinstance(value, str):
        return {"color": value}
    if isinstance(value, dict):
        return dict(value)
    return None


def merge_options(defaults, *layers):
    """
    Layers option dicts over a copy of ``defaults``. ``fill``, ``line`` and
    ``border`` merge one level deep and accept a bare color string.
    """
    merged = copy.deepcopy(defaults)
    for layer in layers:
        if not isinstance(layer, dict):
            continue
        for key, value in layer.items():
            if key in STYLE_KEYS:
                style = _as_style_dict(value)
                if style is None:
                    continue
                base = merged.get(key) if isinstance(merged.get(key), dict) else {}
                merged[key] = {**base, **style}
            elif key == "lineSize":
                line = merged.get("line") if isinstance(merged.get("line"), dict) else {}
                merged["line"] = {**line, "width": value}
            else:
                merged[key] = value

    if "color" in merged:
        color = normalize_color(merged["color"], defaults.get("color"))
        if color is None:
            merged.pop("color")
        else:
            merged["color"] = color
    for key in STYLE_KEYS:
        style = merged.get(key)
        if not isinstance(style, dict) or "color" not in style:
            continue
        default_style = defaults.get(key) if isinstance(defaults.get(key), dict) else {}
        color = normalize_color(style["color"], default_style.get("color"))
        if color is None:
            style.pop("color")
        else:
            style["color"] = color

    if "fontSize" in merged:
        size = clamp_font_size(merged["fontSize"], defaults.get("fontSize"))
        if size is None:
            merged.pop("fontSize")
        else:
            merged["fontSize"] = size
    return merged


def _parse_length(value, extent):
    """Inches (number or numeric string) or a percentage of ``extent``, in EMU."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return int(Inches(number)) if math.isfinite(number) else None
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.endswith("%"):
                number = float(text[:-1])
                return int(number / 100 * extent) if math.isfinite(number) else None
            number = float(text)
        except ValueError:
            return None
        return int(Inches(number)) if math.isfinite(number) else None
    return None


def resolve_length(value, extent, default=None):
    """Resolves a length to EMU, falling back to ``default`` when malformed."""
    resolved = _parse_length(value, extent)
    if resolved is None and default is not None:
        resolved = _parse_length(default, extent)
    return resolved


def resolve_geometry(kind, canvas, *sources):
    """
    Collects x/y/w/h from ``sources`` (later ones win) and converts them to EMU.
    x and w are relative to the canvas width, y and h to its height.
    """
    defaults = GEOMETRY_DEFAULTS[kind]
    extents = {"x": canvas.width, "y": canvas.height, "w": canvas.width, "h": canvas.height}
    geometry = {}
    for field in GEOMETRY_KEYS:
        raw = None
        for source in sources:
            if isinstance(source, dict) and source.get(field) is not None:
                raw = source[field]
        value = _parse_length(raw, extents[field]) if raw is not None else None
        if value is None:
            if raw is not None:
                logging.warning(f"Malformed geometry {field}={raw!r} on {kind} element. Using default.")
            default = defaults[field]
            value = _parse_length(default, extents[field]) if default is not None else None
        geometry[field] = value
    return geometry


def strip_bullet_glyph(text):
    """Removes one leading bullet glyph so the renderer's own bullet is not doubled."""
    if text and text[0] in BULLET_GLYPHS:
        return text[1:].strip()
    return text


def _wants_bullet(options):
    if not isinstance(options, dict):
        return False
    bullet = options.get("bullet")
    if isinstance(bullet, dict):
        return True
    return bool(bullet)


def _without(mapping, keys):
    return {k: v for k, v in mapping.items() if k not in keys}


def _unwrap(raw):
    """
    Rewrites the legacy element shapes into the keyed form the dispatcher reads:
    a bare string becomes ``{"text": ...}`` and the tagged ``{"type", "options"}``
    form becomes ``{<type>: {...}}``.
    """
    if isinstance(raw, str):
        return {"text": raw}
    if not isinstance(raw, dict):
        return None

    tag = raw.get("type")
    if not isinstance(tag, str) or tag.lower() not in TAGGED_KINDS:
        return raw
    tag = tag.lower()
    options = raw.get("options") if isinstance(raw.get("options"), dict) else {}

    if tag == "text":
        text = raw.get("text", options.get("text"))
        unwrapped = _without(raw, ("type", "options", "text"))
        unwrapped["text"] = text
        unwrapped["options"] = _without(options, ("text",))
        return unwrapped
    if isinstance(raw.get(tag), (dict, list)):
        # Already keyed; the tag is redundant.
        return raw
    data = _without(raw, ("type", "options"))
    if tag == "table":
        rows = raw.get("rows", options.get("rows"))
        return {"table": {**_without(options, ("rows",)), **_without(data, ("rows",)), "rows": rows}}
    return {tag: {**options, **data}}


# --- 3. Kind Normalizers ---

def _text_element(text, element, options, block_options, canvas):
    return TextElement(
        text=text,
        options=merge_options(TEXT_DEFAULTS, options, block_options),
        **resolve_geometry("text", canvas, element, options, block_options),
    )


def _rich_text_element(fragments, element, options, canvas):
    container_bullet = _wants_bullet(options) or _wants_bullet(element)
    paragraphs = []
    for fragment in fragments:
        if isinstance(fragment, str):
            text, fragment_options = fragment, {}
        elif isinstance(fragment, dict) and isinstance(fragment.get("text"), str):
            text = fragment["text"]
            fragment_options = fragment.get("options") if isinstance(fragment.get("options"), dict) else {}
        else:
            logging.warning(f"Skipping malformed text fragment: {fragment!r}")
            continue

        text = text.strip()
        if container_bullet:
            text = strip_bullet_glyph(text)
        if not text:
            continue
        paragraphs.append(Paragraph(
            text=text,
            bullet=container_bullet or _wants_bullet(fragment_options),
            options=merge_options({}, _without(fragment_options, ("bullet",))),
        ))

    if not paragraphs:
        raise ElementRenderError("Text array has no non-empty fragments")
    return RichTextElement(
        paragraphs=paragraphs,
        options=merge_options(TEXT_DEFAULTS, _without(options, ("bullet",))),
        **resolve_geometry("text", canvas, element, options),
    )


def _table_cell(cell):
    if cell is None:
        return TableCell()
    if isinstance(cell, dict):
        text = cell.get("text")
        return TableCell(
            text="" if text is None else str(text),
            options=merge_options({}, cell.get("options")),
        )
    return TableCell(text=str(cell))


def _column_widths(value, canvas, num_cols):
    if value is None:
        return None
    if not isinstance(value, list):
        value = [value] * num_cols
    widths = [resolve_length(width, canvas.width) for width in value]
    if len(widths) != num_cols or any(width is None for width in widths):
        logging.warning(f"Ignoring malformed table colW: {value!r}")
        return None
    return widths


def _table_element(table, element, options, canvas):
    if isinstance(table, list):
        rows_data, table_options = table, {}
    else:
        rows_data, table_options = table["rows"], _without(table, ("rows",))

    rows = []
    for row in rows_data:
        if not isinstance(row, list):
            raise ElementRenderError(f"Table row must be an array, got {type(row).__name__}")
        rows.append([_table_cell(cell) for cell in row])
    if not any(rows):
        raise ElementRenderError("Table has no cells")

    merged = merge_options(TABLE_DEFAULTS, table_options, options)
    geometry = resolve_geometry("table", canvas, element, table_options, options)
    if geometry["h"] is None:
        geometry["h"] = int(Inches(TABLE_ROW_HEIGHT * len(rows)))
    num_cols = max(len(row) for row in rows)
    return TableElement(
        rows=rows,
        col_widths=_column_widths(merged.get("colW"), canvas, num_cols),
        options=merged,
        **geometry,
    )


def _image_element(image, element, options, canvas):
    if isinstance(image, str):
        image = {"path": image}
    if not isinstance(image, dict):
        raise ElementRenderError("Image must be an object or a path string")
    source = image.get("data") or image.get("path") or image.get("url")
    if not isinstance(source, str) or not source.strip():
        raise ElementRenderError("Image requires a path, url or data reference")
    return ImageElement(
        source=source.strip(),
        options=merge_options({}, _without(image, SOURCE_KEYS + GEOMETRY_KEYS), options),
        **resolve_geometry("image", canvas, element, image, options),
    )


def _shape_element(shape, element, options, canvas):
    if isinstance(shape, str):
        shape = {"type": shape}
    if not isinstance(shape, dict):
        raise ElementRenderError("Shape must be an object or a shape name")
    name = shape.get("shape") or shape.get("type") or shape.get("name") or "rect"
    text = shape.get("text")
    return ShapeElement(
        shape=str(name),
        text=text if isinstance(text, str) else None,
        options=merge_options(SHAPE_DEFAULTS, _without(shape, GEOMETRY_KEYS), options),
        **resolve_geometry("shape", canvas, element, shape, options),
    )


def _rect_element(rect, element, options, canvas):
    if not isinstance(rect, dict):
        raise ElementRenderError("Rect must be an object")
    return RectElement(
        options=merge_options(SHAPE_DEFAULTS, _without(rect, GEOMETRY_KEYS), options),
        **resolve_geometry("shape", canvas, element, rect, options),
    )


def _chart_series(index, entry):
    if not isinstance(entry, dict):
        raise ElementRenderError(f"Chart series {index + 1} must be an object")
    labels, values = entry.get("labels"), entry.get("values")
    if not isinstance(labels, list) or not isinstance(values, list) or len(labels) != len(values):
        raise ElementRenderError(f"Chart series {index + 1} needs labels and values of equal length")
    try:
        values = [float(v) for v in values]
    except (TypeError, ValueError) as e:
        raise ElementRenderError(f"Chart series {index + 1} has non-numeric values") from e
    return ChartSeries(
        name=str(entry.get("name") or f"Series {index + 1}"),
        labels=[str(label) for label in labels],
        values=values,
    )


def _chart_element(chart, element, options, canvas):
    if not isinstance(chart, dict):
        raise ElementRenderError("Chart must be an object")
    chart_type = str(chart.get("chartType") or chart.get("type") or "bar").lower()
    if chart_type not in CHART_TYPES:
        raise ElementRenderError(f"Unsupported chart type '{chart_type}'")
    data = chart.get("data")
    if not isinstance(data, list) or not data:
        raise ElementRenderError("Chart requires a non-empty data array")
    return ChartElement(
        chart_type=chart_type,
        series=[_chart_series(i, entry) for i, entry in enumerate(data)],
        options=merge_options(CHART_DEFAULTS, _without(chart, ("data",) + GEOMETRY_KEYS), options),
        **resolve_geometry("chart", canvas, element, chart, options),
    )


def _media_element(media, element, options, canvas):
    if not isinstance(media, dict):
        raise ElementRenderError("Media must be an object")
    media_type = str(media.get("type") or "video").lower()
    if media_type not in MEDIA_TYPES:
        raise ElementRenderError(f"Unsupported media type '{media_type}'")

    link = media.get("link")
    source = media.get("data") or media.get("path") or media.get("url")
    if media_type == "online":
        if not isinstance(link, str) or not link.strip():
            raise ElementRenderError("Online media requires a link")
        source = None
    elif not isinstance(source, str) or not source.strip():
        raise ElementRenderError(f"{media_type.capitalize()} media requires a path or data reference")

    cover = media.get("cover")
    return MediaElement(
        media_type=media_type,
        source=source.strip() if source else None,
        link=link.strip() if isinstance(link, str) and link.strip() else None,
        cover=cover if isinstance(cover, str) and cover.strip() else None,
        options=merge_options({}, options),
        **resolve_geometry("media", canvas, element, media, options),
    )


# Checked in this order after the text and table cases.
KEYED_NORMALIZERS = (
    ("image", _image_element),
    ("rect", _rect_element),
    ("shape", _shape_element),
    ("chart", _chart_element),
    ("media", _media_element),
)


# --- 4. Dispatcher ---

def normalize_element(raw, canvas):
    """
    Normalizes one loosely-typed slide object into its canonical element.

    The cases are tried in a fixed order and the first match wins:
    plain text, nested text block, paragraph array, table, then the keyed
    image/rect/shape/chart/media objects. Anything else comes back as an
    ``UnrecognizedElement``. Malformed data inside a recognized kind raises
    ``ElementRenderError``.
    """
    element = _unwrap(raw)
    if element is None:
        return UnrecognizedElement(reason=f"element of type {type(raw).__name__} is not an object")

    options = element.get("options") if isinstance(element.get("options"), dict) else {}
    text = element.get("text")

    if isinstance(text, str):
        return _text_element(text, element, options, {}, canvas)

    if isinstance(text, dict):
        nested = text.get("text") if isinstance(text.get("text"), str) else text.get("value")
        if isinstance(nested, str):
            block_options = text.get("options") if isinstance(text.get("options"), dict) else {}
            return _text_element(nested, element, options, block_options, canvas)

    if isinstance(text, list):
        return _rich_text_element(text, element, options, canvas)

    table = element.get("table")
    if isinstance(table, list) or (isinstance(table, dict) and isinstance(table.get("rows"), list)):
        return _table_element(table, element, options, canvas)

    for key, normalizer in KEYED_NORMALIZERS:
        if element.get(key) is not None:
            return normalizer(element[key], element, options, canvas)

    return UnrecognizedElement(reason=f"no recognized content in keys {sorted(element)}")

import io
import logging
import mimetypes
import uuid

from pptx import Presentation
from pptx.chart.data import CategoryChartData
from pptx.dml.color import RGBColor
from pptx.enum.chart import XL_CHART_TYPE, XL_LEGEND_POSITION
from pptx.enum.shapes import MSO_CONNECTOR, MSO_SHAPE
from pptx.enum.text import MSO_ANCHOR, PP_ALIGN
from pptx.oxml.ns import qn
from pptx.util import Emu, Inches, Pt

from asset_fetcher import fetch_asset
from config import get_settings
from errors import BuildError, ElementRenderError, PresentationError
from models import Canvas, RectElement, RenderedArtifact
from slide_objects import clamp_font_size, normalize_color, normalize_element


# --- 1. Design Constants ---
# Layout indices in the default python-pptx template
TITLE_SLIDE_LAYOUT = 0
TITLE_ONLY_LAYOUT = 5
BLANK_LAYOUT = 6

DEFAULT_TITLE = "Presentation"
MAX_CORE_PROPERTY_LENGTH = 255
FULL_BLEED_TOLERANCE = Pt(1)
BULLET_CHAR = "•"
BULLET_INDENT = Pt(18)

ALIGNMENTS = {
    "left": PP_ALIGN.LEFT,
    "center": PP_ALIGN.CENTER,
    "right": PP_ALIGN.RIGHT,
    "justify": PP_ALIGN.JUSTIFY,
}
ANCHORS = {
    "top": MSO_ANCHOR.TOP,
    "middle": MSO_ANCHOR.MIDDLE,
    "bottom": MSO_ANCHOR.BOTTOM,
}
SHAPE_TYPES = {
    "rect": MSO_SHAPE.RECTANGLE,
    "rectangle": MSO_SHAPE.RECTANGLE,
    "roundrect": MSO_SHAPE.ROUNDED_RECTANGLE,
    "ellipse": MSO_SHAPE.OVAL,
    "oval": MSO_SHAPE.OVAL,
    "triangle": MSO_SHAPE.ISOSCELES_TRIANGLE,
    "diamond": MSO_SHAPE.DIAMOND,
    "pentagon": MSO_SHAPE.REGULAR_PENTAGON,
    "hexagon": MSO_SHAPE.HEXAGON,
    "chevron": MSO_SHAPE.CHEVRON,
    "rightarrow": MSO_SHAPE.RIGHT_ARROW,
    "leftarrow": MSO_SHAPE.LEFT_ARROW,
    "uparrow": MSO_SHAPE.UP_ARROW,
    "downarrow": MSO_SHAPE.DOWN_ARROW,
    "star5": MSO_SHAPE.STAR_5_POINT,
    "heart": MSO_SHAPE.HEART,
    "cloud": MSO_SHAPE.CLOUD,
}
CHART_TYPES = {
    "column": XL_CHART_TYPE.COLUMN_CLUSTERED,
    "line": XL_CHART_TYPE.LINE_MARKERS,
    "area": XL_CHART_TYPE.AREA,
    "pie": XL_CHART_TYPE.PIE,
    "doughnut": XL_CHART_TYPE.DOUGHNUT,
    "radar": XL_CHART_TYPE.RADAR,
}
LEGEND_POSITIONS = {
    "b": XL_LEGEND_POSITION.BOTTOM,
    "t": XL_LEGEND_POSITION.TOP,
    "l": XL_LEGEND_POSITION.LEFT,
    "r": XL_LEGEND_POSITION.RIGHT,
    "tr": XL_LEGEND_POSITION.CORNER,
}
MEDIA_MIME_DEFAULTS = {"video": "video/mp4", "audio": "audio/mpeg"}


class BuildContext:
    """State for one build: canvas, settings and per-request counters.

    With ``element_kinds`` set, the build is strict: an element of another kind,
    or one that fails to draw, aborts the build instead of being skipped.
    """

    def __init__(self, canvas, settings, request_id, element_kinds=None):
        self.canvas = canvas
        self.settings = settings
        self.request_id = request_id
        self.element_kinds = tuple(element_kinds) if element_kinds is not None else None
        self.drawn = 0
        self.skipped = 0
        self.backgrounds = 0

    def fetch(self, source):
        return fetch_asset(source, self.settings.fetch_timeout_seconds, self.settings.max_asset_bytes)


# --- 2. Helper Functions ---

def _number(value):
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _style_run(run, options):
    """Applies font options (fontSize, fontFace, color, bold, italic, underline) to a run."""
    font = run.font
    size = clamp_font_size(options.get("fontSize"))
    if size is not None:
        font.size = Pt(size)
    if isinstance(options.get("fontFace"), str):
        font.name = options["fontFace"]
    color = normalize_color(options.get("color"))
    if color:
        font.color.rgb = RGBColor.from_string(color)
    for key in ("bold", "italic", "underline"):
        if key in options:
            setattr(font, key, bool(options[key]))


def _style_paragraph(p, options):
    alignment = ALIGNMENTS.get(str(options.get("align", "")).lower())
    if alignment is not None:
        p.alignment = alignment
    spacing = _number(options.get("lineSpacingMultiple"))
    if spacing is not None and spacing > 0:
        p.line_spacing = spacing


def _set_bullet(p):
    """Turns a paragraph into a bulleted one; the glyph comes from the renderer."""
    pPr = p._p.get_or_add_pPr()
    pPr.set("marL", str(int(BULLET_INDENT)))
    pPr.set("indent", str(-int(BULLET_INDENT)))
    for tag in ("a:buNone", "a:buAutoNum", "a:buChar"):
        for existing in pPr.findall(qn(tag)):
            pPr.remove(existing)
    bullet = pPr.makeelement(qn("a:buChar"), {"char": BULLET_CHAR})
    pPr.insert_element_before(bullet, "a:tabLst", "a:defRPr", "a:extLst")


def _apply_fill(shape, fill):
    if not isinstance(fill, dict):
        return
    if fill.get("type") == "none":
        shape.fill.background()
    elif fill.get("color"):
        shape.fill.solid()
        shape.fill.fore_color.rgb = RGBColor.from_string(fill["color"])


def _apply_line(shape, line):
    if not isinstance(line, dict):
        return
    if line.get("type") == "none":
        shape.line.fill.background()
        return
    if line.get("color"):
        shape.line.color.rgb = RGBColor.from_string(line["color"])
    width = _number(line.get("width"))
    if width is not None and width >= 0:
        shape.line.width = Pt(width)


def _set_cell_border(cell, border):
    if not isinstance(border, dict) or border.get("type") == "none":
        return
    color = border.get("color") or "666666"
    width = _number(border.get("pt"))
    width = Pt(width if width is not None and width >= 0 else 1)
    dash = "dash" if border.get("type") == "dash" else "solid"

    tcPr = cell._tc.get_or_add_tcPr()
    for index, tag in enumerate(("a:lnL", "a:lnR", "a:lnT", "a:lnB")):
        for existing in tcPr.findall(qn(tag)):
            tcPr.remove(existing)
        ln = tcPr.makeelement(qn(tag), {"w": str(int(width)), "cap": "flat", "cmpd": "sng", "algn": "ctr"})
        solid_fill = ln.makeelement(qn("a:solidFill"), {})
        solid_fill.append(solid_fill.makeelement(qn("a:srgbClr"), {"val": color}))
        ln.append(solid_fill)
        ln.append(ln.makeelement(qn("a:prstDash"), {"val": dash}))
        tcPr.insert(index, ln)


def _send_to_back(slide, shape):
    sp_tree = slide.shapes._spTree
    sp_tree.remove(shape._element)
    # The first two children are the group's own properties.
    sp_tree.insert(2, shape._element)


def add_speaker_notes(slide, notes_text):
    """Adds speaker notes to the slide."""
    if notes_text is None:
        return
    if not isinstance(notes_text, str):
        logging.warning(f"Ignoring non-string notes of type {type(notes_text).__name__}")
        return
    if notes_text:
        slide.notes_slide.notes_text_frame.text = notes_text


def set_background_color(slide, color):
    fill = slide.background.fill
    fill.solid()
    fill.fore_color.rgb = RGBColor.from_string(color)


def apply_background(slide, background, ctx):
    """Applies a flat color or a full-canvas image as the slide background."""
    if background is None:
        return
    if isinstance(background, str):
        background = {"color": background}
    if not isinstance(background, dict):
        raise ElementRenderError(f"Background must be a color or an object, got {type(background).__name__}")

    fill = background.get("fill")
    color = normalize_color(background.get("color")) or normalize_color(
        fill.get("color") if isinstance(fill, dict) else fill
    )
    if color:
        set_background_color(slide, color)
        return

    source = background.get("data") or background.get("path") or background.get("url")
    if not isinstance(source, str) or not source.strip():
        raise ElementRenderError("Background needs a color or an image reference")
    picture = slide.shapes.add_picture(
        io.BytesIO(ctx.fetch(source.strip())), 0, 0, ctx.canvas.width, ctx.canvas.height
    )
    _send_to_back(slide, picture)


def is_full_bleed(element, canvas):
    """A rectangle at the origin covering the whole canvas is a background, not a shape."""
    return (
        isinstance(element, RectElement)
        and element.x == 0 and element.y == 0
        and element.w is not None and element.h is not None
        and element.w >= canvas.width - FULL_BLEED_TOLERANCE
        and element.h >= canvas.height - FULL_BLEED_TOLERANCE
    )


def presentation_filename(title, default="presentation.pptx"):
    """Derives a download filename from the presentation title."""
    safe_title = "".join(c for c in (title or "") if c.isalnum() or c in (' ', '_')).strip()
    if not safe_title:
        return default
    return f"{safe_title.replace(' ', '_')}.pptx"


# --- 3. Element Drawing Functions ---

def draw_text(slide, element, ctx):
    """Draws text as one run, or one trimmed paragraph per non-empty line."""
    options = element.options
    text_box = slide.shapes.add_textbox(element.x, element.y, element.w, element.h)
    text_frame = text_box.text_frame
    text_frame.word_wrap = True
    anchor = ANCHORS.get(str(options.get("valign", "")).lower())
    if anchor is not None:
        text_frame.vertical_anchor = anchor

    lines = [element.text]
    if "\n" in element.text or "\r" in element.text:
        lines = [line.strip() for line in element.text.splitlines() if line.strip()] or [""]
    for index, line in enumerate(lines):
        p = text_frame.paragraphs[0] if index == 0 else text_frame.add_paragraph()
        _style_paragraph(p, options)
        run = p.add_run()
        run.text = line
        _style_run(run, options)
    _apply_fill(text_box, options.get("fill"))


def draw_rich_text(slide, element, ctx):
    """Draws a paragraph list, one paragraph per fragment."""
    options = element.options
    text_box = slide.shapes.add_textbox(element.x, element.y, element.w, element.h)
    text_frame = text_box.text_frame
    text_frame.word_wrap = True
    anchor = ANCHORS.get(str(options.get("valign", "")).lower())
    if anchor is not None:
        text_frame.vertical_anchor = anchor

    for index, paragraph in enumerate(element.paragraphs):
        p = text_frame.paragraphs[0] if index == 0 else text_frame.add_paragraph()
        style = {**options, **paragraph.options}
        if paragraph.bullet:
            _set_bullet(p)
        _style_paragraph(p, style)
        run = p.add_run()
        run.text = paragraph.text
        _style_run(run, style)
    _apply_fill(text_box, options.get("fill"))


def draw_table(slide, element, ctx):
    """Draws a table; rows and columns keep their input order."""
    options = element.options
    num_rows = len(element.rows)
    num_cols = max(len(row) for row in element.rows)

    table = slide.shapes.add_table(num_rows, num_cols, element.x, element.y, element.w, element.h).table
    table.first_row = bool(options.get("autoHeader", False))
    table.horz_banding = False

    # Column widths: explicit colW, else equal distribution
    widths = element.col_widths or [element.w // num_cols] * num_cols
    for col_idx, width in enumerate(widths):
        table.columns[col_idx].width = Emu(width)

    cell_defaults = {k: v for k, v in options.items() if k not in ("fill", "border", "colW")}
    for row_idx, row in enumerate(element.rows):
        for col_idx in range(num_cols):
            cell = table.cell(row_idx, col_idx)
            cell_data = row[col_idx] if col_idx < len(row) else None
            cell_options = cell_data.options if cell_data else {}
            style = {**cell_defaults, **cell_options}

            p = cell.text_frame.paragraphs[0]
            _style_paragraph(p, style)
            run = p.add_run()
            run.text = cell_data.text if cell_data else ""
            _style_run(run, style)
            if "color" not in style:
                run.font.color.rgb = RGBColor(0, 0, 0)

            fill = cell_options.get("fill") or options.get("fill") or {}
            if fill.get("color"):
                cell.fill.solid()
                cell.fill.fore_color.rgb = RGBColor.from_string(fill["color"])
            _set_cell_border(cell, cell_options.get("border") or options.get("border"))


def draw_image(slide, element, ctx):
    data = ctx.fetch(element.source)
    try:
        picture = slide.shapes.add_picture(io.BytesIO(data), element.x, element.y, element.w, element.h)
    except (OSError, ValueError) as e:
        raise ElementRenderError(f"Unreadable image data: {e}") from e
    hyperlink = element.options.get("hyperlink")
    if isinstance(hyperlink, dict) and isinstance(hyperlink.get("url"), str):
        picture.click_action.hyperlink.address = hyperlink["url"]


def _draw_autoshape(slide, auto_shape_type, element):
    options = element.options
    shape = slide.shapes.add_shape(auto_shape_type, element.x, element.y, element.w, element.h)
    _apply_fill(shape, options.get("fill"))
    _apply_line(shape, options.get("line"))
    return shape


def draw_shape(slide, element, ctx):
    """Draws a preset shape, or a straight connector for 'line'."""
    name = element.shape.lower()
    if name == "line":
        connector = slide.shapes.add_connector(
            MSO_CONNECTOR.STRAIGHT, element.x, element.y, element.x + element.w, element.y + element.h
        )
        _apply_line(connector, element.options.get("line"))
        return

    auto_shape_type = SHAPE_TYPES.get(name)
    if auto_shape_type is None:
        logging.warning(f"[{ctx.request_id}] Unknown shape '{element.shape}'. Drawing a rectangle.")
        auto_shape_type = MSO_SHAPE.RECTANGLE
    shape = _draw_autoshape(slide, auto_shape_type, element)
    if element.text:
        p = shape.text_frame.paragraphs[0]
        _style_paragraph(p, element.options)
        run = p.add_run()
        run.text = element.text
        _style_run(run, element.options)


def draw_rect(slide, element, ctx):
    _draw_autoshape(slide, MSO_SHAPE.RECTANGLE, element)


def draw_chart(slide, element, ctx):
    """Draws a category chart from [{name, labels, values}] series."""
    options = element.options
    if element.chart_type == "bar":
        chart_type = XL_CHART_TYPE.BAR_CLUSTERED if options.get("barDir") == "bar" else XL_CHART_TYPE.COLUMN_CLUSTERED
    else:
        chart_type = CHART_TYPES[element.chart_type]

    chart_data = CategoryChartData()
    chart_data.categories = element.series[0].labels
    for series in element.series:
        chart_data.add_series(series.name, series.values)

    chart = slide.shapes.add_chart(chart_type, element.x, element.y, element.w, element.h, chart_data).chart
    chart.has_legend = bool(options.get("showLegend", True))
    if chart.has_legend:
        chart.legend.position = LEGEND_POSITIONS.get(str(options.get("legendPos")), XL_LEGEND_POSITION.RIGHT)
        chart.legend.include_in_layout = False
    title = options.get("title")
    if isinstance(title, str) and title:
        chart.has_title = True
        chart.chart_title.text_frame.text = title


def draw_media(slide, element, ctx):
    """Embeds video/audio bytes, or a hyperlink box for online media."""
    if element.media_type == "online":
        text_box = slide.shapes.add_textbox(element.x, element.y, element.w, element.h)
        run = text_box.text_frame.paragraphs[0].add_run()
        run.text = element.options.get("text") or element.link
        run.hyperlink.address = element.link
        return

    data = ctx.fetch(element.source)
    poster = io.BytesIO(ctx.fetch(element.cover)) if element.cover else None
    mime_type = element.options.get("mimeType")
    if not isinstance(mime_type, str):
        mime_type = mimetypes.guess_type(element.source)[0] or MEDIA_MIME_DEFAULTS[element.media_type]
    slide.shapes.add_movie(
        io.BytesIO(data), element.x, element.y, element.w, element.h,
        poster_frame_image=poster, mime_type=mime_type,
    )


def draw_unrecognized(slide, element, ctx):
    raise ElementRenderError(f"Unrecognized element: {element.reason}")


# Map element kinds to functions
ELEMENT_DRAW_FUNCTIONS = {
    "text": draw_text,
    "rich_text": draw_rich_text,
    "table": draw_table,
    "image": draw_image,
    "shape": draw_shape,
    "rect": draw_rect,
    "chart": draw_chart,
    "media": draw_media,
    "unrecognized": draw_unrecognized,
}


# --- 4. Main Execution Logic ---

def _discard_shapes_after(slide, count):
    """Removes shape tree children added after the first ``count``."""
    sp_tree = slide.shapes._spTree
    for child in list(sp_tree)[count:]:
        sp_tree.remove(child)


def draw_element(slide, raw_element, ctx, label):
    """Normalizes and draws one element. Element-level errors skip the element only."""
    shape_count = len(slide.shapes._spTree)
    try:
        element = normalize_element(raw_element, ctx.canvas)
        if ctx.element_kinds is not None and element.kind not in ctx.element_kinds:
            raise ElementRenderError(f"Expected a {' or '.join(ctx.element_kinds)} element, got {element.kind}")
        if is_full_bleed(element, ctx.canvas):
            fill = element.options.get("fill")
            if isinstance(fill, dict) and fill.get("type") != "none" and fill.get("color"):
                set_background_color(slide, fill["color"])
            ctx.backgrounds += 1
            logging.debug(f"[{ctx.request_id}] {label}: full-bleed rect used as background")
            return
        try:
            ELEMENT_DRAW_FUNCTIONS[element.kind](slide, element, ctx)
        except (ValueError, TypeError) as e:
            raise ElementRenderError(f"Invalid {element.kind} options: {e}") from e
        ctx.drawn += 1
    except ElementRenderError as e:
        _discard_shapes_after(slide, shape_count)
        if ctx.element_kinds is not None:
            raise
        ctx.skipped += 1
        logging.warning(f"[{ctx.request_id}] {label}: skipped ({e.kind}): {e}")


def _add_slide(prs, title):
    if isinstance(title, str) and title.strip():
        slide = prs.slides.add_slide(prs.slide_layouts[TITLE_ONLY_LAYOUT])
        slide.shapes.title.text = title
        return slide
    return prs.slides.add_slide(prs.slide_layouts[BLANK_LAYOUT])


def draw_title_slide(prs, request, ctx):
    """Draws the lone title slide of a deck without content slides."""
    slide = prs.slides.add_slide(prs.slide_layouts[TITLE_SLIDE_LAYOUT])
    width = ctx.canvas.width - Inches(1)

    title = slide.shapes.title
    title.left, title.top, title.width, title.height = Inches(0.5), int(ctx.canvas.height * 0.3), width, Inches(1.25)
    title.text = request.title or DEFAULT_TITLE

    subtitle = slide.placeholders[1]
    subtitle.left, subtitle.top, subtitle.width, subtitle.height = (
        Inches(0.5), int(ctx.canvas.height * 0.3) + Inches(1.4), width, Inches(0.75)
    )
    subtitle.text = request.author or ""
    return slide


def build_slide(prs, index, slide_data, ctx):
    """Adds exactly one output slide for one slide entry, whatever its content."""
    if not isinstance(slide_data, dict):
        logging.warning(f"[{ctx.request_id}] Slide {index + 1} is not an object. Adding a blank slide.")
        return _add_slide(prs, None)

    slide = _add_slide(prs, slide_data.get("title"))

    background = slide_data.get("background", slide_data.get("bkgd"))
    try:
        apply_background(slide, background, ctx)
    except ElementRenderError as e:
        logging.warning(f"[{ctx.request_id}] Slide {index + 1}: background skipped ({e.kind}): {e}")

    add_speaker_notes(slide, slide_data.get("notes"))

    objects = slide_data.get("objects", slide_data.get("elements"))
    if objects is None:
        objects = []
    elif not isinstance(objects, list):
        logging.warning(f"[{ctx.request_id}] Slide {index + 1}: objects is not an array. Ignoring it.")
        objects = []

    for position, raw_element in enumerate(objects):
        draw_element(slide, raw_element, ctx, f"Slide {index + 1} element {position + 1}")
    return slide


def apply_metadata(prs, request):
    props = prs.core_properties
    if request.title:
        props.title = request.title[:MAX_CORE_PROPERTY_LENGTH]
    if request.author:
        props.author = request.author[:MAX_CORE_PROPERTY_LENGTH]
        props.last_modified_by = request.author[:MAX_CORE_PROPERTY_LENGTH]
    if request.subject:
        props.subject = request.subject[:MAX_CORE_PROPERTY_LENGTH]
    if request.company:
        # python-pptx has no company property; category is the closest core field.
        props.category = request.company[:MAX_CORE_PROPERTY_LENGTH]


def create_presentation(request, settings=None, request_id=None, element_kinds=None):
    """Creates a new presentation from a validated PresentationRequest."""
    ctx = BuildContext(
        canvas=Canvas.for_layout(request.layout),
        settings=settings or get_settings(),
        request_id=request_id or uuid.uuid4().hex[:8],
        element_kinds=element_kinds,
    )
    prs = Presentation()
    prs.slide_width = ctx.canvas.width
    prs.slide_height = ctx.canvas.height
    apply_metadata(prs, request)

    logging.info(f"[{ctx.request_id}] Starting presentation generation: {len(request.slides)} slide(s)")
    if not request.slides:
        draw_title_slide(prs, request, ctx)
    for index, slide_data in enumerate(request.slides):
        build_slide(prs, index, slide_data, ctx)

    logging.info(
        f"[{ctx.request_id}] Presentation built: {len(prs.slides)} slide(s), "
        f"{ctx.drawn} element(s) drawn, {ctx.skipped} skipped, {ctx.backgrounds} full-bleed background(s)"
    )
    return prs


def render_presentation(request, settings=None, request_id=None, element_kinds=None):
    """Builds and encodes the presentation. Library failures become BuildError."""
    settings = settings or get_settings()
    try:
        prs = create_presentation(request, settings=settings, request_id=request_id, element_kinds=element_kinds)
        buffer = io.BytesIO()
        prs.save(buffer)
    except PresentationError:
        raise
    except Exception as e:
        logging.error(f"Presentation build failed: {e}", exc_info=True)
        raise BuildError(f"Failed to build presentation: {e}") from e

    return RenderedArtifact(
        content=buffer.getvalue(),
        filename=presentation_filename(request.title, settings.default_filename),
    )

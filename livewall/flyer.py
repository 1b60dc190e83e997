"""
Printable QR flyer generation.

The flyer is an A5 card laid out on a 420x595 point canvas: event name on
top, an optional message below it, the upload QR code centered a little
below the middle, instructions and the event password under the QR code and
a footer line at the bottom. ``render_flyer`` draws it with Pillow at any
scale; ``export_pdf`` places the rendered card on a paper page with
reportlab.
"""
import io
import logging
import re
import threading
from dataclasses import asdict, dataclass, fields, replace
from datetime import date

from PIL import Image, ImageDraw, ImageFont
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as pdf_canvas

from livewall.errors import ValidationError
from livewall.qr import make_flyer_qr_image
from livewall.timers import Debouncer

logger = logging.getLogger(__name__)

TEMPLATE_TYPE = 'a5'
TEMPLATE_WIDTH = 420
TEMPLATE_HEIGHT = 595
TEMPLATE_QR_SIZE = 150
TEMPLATE_MARGIN = 40
QR_PAD = 10

QR_SIZES = {
    'small': 0.8,
    'medium': 1.0,
    'large': 1.2,
}

COLOR_SCHEMES = {
    'blue': {'primary': '#2563eb', 'background': '#eff6ff', 'text': '#1e293b'},
    'green': {'primary': '#059669', 'background': '#ecfdf5', 'text': '#1e293b'},
    'purple': {'primary': '#7c3aed', 'background': '#f3e8ff', 'text': '#1e293b'},
    'orange': {'primary': '#ea580c', 'background': '#fff7ed', 'text': '#1e293b'},
    'red': {'primary': '#dc2626', 'background': '#fef2f2', 'text': '#1e293b'},
    'teal': {'primary': '#0891b2', 'background': '#f0fdfa', 'text': '#1e293b'},
    'indigo': {'primary': '#4f46e5', 'background': '#eef2ff', 'text': '#1e293b'},
}

# Font family -> TrueType file stem looked up on the system font path
FONTS = {
    'Inter': 'Inter',
    'Roboto': 'Roboto',
    'Open Sans': 'OpenSans',
    'Lato': 'Lato',
    'Montserrat': 'Montserrat',
    'Nunito': 'Nunito',
    'Poppins': 'Poppins',
    'Source Sans Pro': 'SourceSansPro',
    'Playfair Display': 'PlayfairDisplay',
    'Merriweather': 'Merriweather',
    'Crimson Text': 'CrimsonText',
}

FONT_SIZES = {'title': 28, 'customMessage': 16, 'instructions': 16, 'footer': 12}

PAPER_SIZES = {
    'a4': (210, 297),
    'letter': (216, 279),
    'a5': (148, 210),
}
DPI_SCALES = {72: 1, 150: 2.08, 300: 4.17}
PDF_MARGIN_MM = 10
ORIENTATIONS = ('portrait', 'landscape')
IMAGE_FORMATS = {'png': 'PNG', 'jpg': 'JPEG', 'jpeg': 'JPEG'}

PREVIEW_DEBOUNCE_SECONDS = 0.3


@dataclass(frozen=True)
class TemplateConfig:
    event_name: str
    upload_url: str
    custom_message: str = 'Share your best moments with me'
    instructions: str = 'Scan to upload your photos & videos'
    footer: str = 'www.livewall.de'
    color_scheme: str = 'blue'
    font: str = 'Inter'
    qr_code_size: str = 'medium'
    event_password: str = None
    is_password_protected: bool = False

    @classmethod
    def from_dict(cls, data, **defaults):
        """Build a config from a JSON body (camelCase or snake_case keys)."""
        aliases = {
            'eventName': 'event_name', 'uploadUrl': 'upload_url',
            'customMessage': 'custom_message', 'colorScheme': 'color_scheme',
            'qrCodeSize': 'qr_code_size', 'eventPassword': 'event_password',
            'isPasswordProtected': 'is_password_protected',
        }
        known = {f.name for f in fields(cls)}
        values = dict(defaults)
        for key, value in (data or {}).items():
            key = aliases.get(key, key)
            if key in known and value is not None:
                values[key] = value
        config = cls(**values)
        config.validate()
        return config

    def validate(self):
        if not (self.event_name or '').strip():
            raise ValidationError('Event-Name ist erforderlich')
        if self.color_scheme not in COLOR_SCHEMES:
            raise ValidationError(f"Unbekanntes Farbschema: {self.color_scheme}")
        if self.font not in FONTS:
            raise ValidationError(f"Unbekannte Schriftart: {self.font}")
        if self.qr_code_size not in QR_SIZES:
            raise ValidationError(f"Unbekannte QR-Code-Größe: {self.qr_code_size}")

    def to_dict(self):
        return asdict(self)

    @property
    def qr_size(self):
        return int(TEMPLATE_QR_SIZE * QR_SIZES[self.qr_code_size])


def load_font(family, size, bold=False):
    stem = FONTS.get(family, FONTS['Inter'])
    for name in (f"{stem}-{'Bold' if bold else 'Regular'}.ttf", f"{stem}.ttf"):
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def wrap_text(draw, text, font, max_width):
    """Greedy word wrap measured with the actual font."""
    lines = []
    current = ''
    for word in text.split(' '):
        candidate = f"{current} {word}" if current else word
        if draw.textlength(candidate, font=font) > max_width and current:
            lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return lines


def wrap_text_with_line_breaks(draw, text, font, max_width):
    lines = []
    for manual_line in text.split('\n'):
        if manual_line.strip() == '':
            lines.append('')
        else:
            lines.extend(wrap_text(draw, manual_line, font, max_width))
    return lines


def _draw_lines(draw, lines, y, line_height, font, fill, scale):
    for index, line in enumerate(lines):
        draw.text(
            (TEMPLATE_WIDTH / 2 * scale, (y + index * line_height) * scale),
            line, font=font, fill=fill, anchor='mm'
        )


def _draw_template(img, config, scale):
    draw = ImageDraw.Draw(img)
    colors = COLOR_SCHEMES[config.color_scheme]
    draw.rectangle([0, 0, img.width, img.height], fill=colors['background'])

    # Wrapping is measured at 1x so line breaks do not depend on the scale
    def fonts(kind, bold=False):
        size = FONT_SIZES[kind]
        return size, load_font(config.font, size, bold), load_font(config.font, max(1, round(size * scale)), bold)

    measure = ImageDraw.Draw(Image.new('RGB', (1, 1)))

    heading_y = TEMPLATE_MARGIN + 40
    size, font_1x, font = fonts('title', bold=True)
    title_lines = wrap_text_with_line_breaks(measure, config.event_name, font_1x, TEMPLATE_WIDTH - 80)
    _draw_lines(draw, title_lines, heading_y, size * 1.2, font, colors['primary'], scale)

    if config.custom_message.strip():
        size, font_1x, font = fonts('customMessage')
        message_lines = wrap_text_with_line_breaks(measure, config.custom_message, font_1x, TEMPLATE_WIDTH - 80)
        _draw_lines(draw, message_lines, heading_y + 100, size * 1.4, font, colors['text'], scale)

    qr_size = config.qr_size
    qr_y = TEMPLATE_HEIGHT / 2 + 40 - qr_size / 2
    qr_x = (TEMPLATE_WIDTH - qr_size) / 2
    draw.rectangle(
        [(qr_x - QR_PAD) * scale, (qr_y - QR_PAD) * scale,
         (qr_x + qr_size + QR_PAD) * scale, (qr_y + qr_size + QR_PAD) * scale],
        fill='#FFFFFF'
    )
    qr_img = make_flyer_qr_image(config.upload_url, qr_size * scale, colors['text'])
    img.paste(qr_img, (round(qr_x * scale), round(qr_y * scale)))

    size, font_1x, font = fonts('footer')
    instruction_lines = wrap_text(measure, config.instructions, font_1x, TEMPLATE_WIDTH - 100)
    _draw_lines(draw, instruction_lines, qr_y + qr_size + 30, size * 1.2, font, colors['text'], scale)

    if config.is_password_protected and config.event_password:
        _draw_lines(draw, [f"Password: {config.event_password}"], qr_y + qr_size + 50, size, font, colors['text'], scale)

    footer_y = TEMPLATE_HEIGHT - TEMPLATE_MARGIN - size / 2
    _draw_lines(draw, [config.footer], footer_y, size, font, colors['text'], scale)


def _draw_error(img, scale):
    draw = ImageDraw.Draw(img)
    draw.rectangle([0, 0, img.width, img.height], fill='#FEF2F2')
    cx, cy = img.width / 2, img.height / 2
    draw.text((cx, cy - 40 * scale), '!', font=ImageFont.load_default(size=round(48 * scale)), fill='#DC2626', anchor='mm')
    draw.text((cx, cy + 20 * scale), 'Template Render Error', font=ImageFont.load_default(size=round(18 * scale)), fill='#DC2626', anchor='mm')
    draw.text((cx, cy + 50 * scale), 'Please check your configuration', font=ImageFont.load_default(size=round(14 * scale)), fill='#7F1D1D', anchor='mm')


def render_flyer(config, scale=1):
    """Render the flyer. Drawing failures yield an error card instead of raising."""
    size = (round(TEMPLATE_WIDTH * scale), round(TEMPLATE_HEIGHT * scale))
    img = Image.new('RGB', size, '#FFFFFF')
    try:
        _draw_template(img, config, scale)
    except Exception as e:
        logger.error(f"[FLYER] Template rendering failed - event_name: {config.event_name}, error: {str(e)}")
        img = Image.new('RGB', size, '#FFFFFF')
        _draw_error(img, scale)
    return img


def image_dimensions(paper_size, orientation):
    """Placement ``(x, y, width, height)`` in mm of the card on the page."""
    paper_width, paper_height = PAPER_SIZES[paper_size]
    if orientation == 'landscape':
        paper_width, paper_height = paper_height, paper_width

    aspect = TEMPLATE_WIDTH / TEMPLATE_HEIGHT
    available_width = paper_width - 2 * PDF_MARGIN_MM
    available_height = paper_height - 2 * PDF_MARGIN_MM
    if available_width / available_height > aspect:
        height = available_height
        width = height * aspect
    else:
        width = available_width
        height = width / aspect
    return (paper_width - width) / 2, (paper_height - height) / 2, width, height


def _check_export_options(paper_size='a4', orientation='portrait', dpi=300):
    if paper_size not in PAPER_SIZES:
        raise ValidationError(f"Unbekanntes Papierformat: {paper_size}")
    if orientation not in ORIENTATIONS:
        raise ValidationError(f"Unbekannte Ausrichtung: {orientation}")
    if dpi not in DPI_SCALES:
        raise ValidationError(f"Nicht unterstützte DPI: {dpi}")


def export_pdf(config, paper_size='a4', orientation='portrait', dpi=300):
    """Render the flyer and place it centered on one PDF page. Returns PDF bytes."""
    _check_export_options(paper_size, orientation, dpi)
    img = render_flyer(config, DPI_SCALES[dpi])

    paper_width, paper_height = PAPER_SIZES[paper_size]
    if orientation == 'landscape':
        paper_width, paper_height = paper_height, paper_width
    x, y, width, height = image_dimensions(paper_size, orientation)

    buf = io.BytesIO()
    pdf = pdf_canvas.Canvas(buf, pagesize=(paper_width * mm, paper_height * mm))
    pdf.setTitle(f"{config.event_name} - QR Code Template")
    pdf.setSubject('Photo Upload QR Code Template')
    pdf.setAuthor('Livewall')
    pdf.setCreator('Livewall Template Generator')
    pdf.drawImage(ImageReader(img), x * mm, y * mm, width * mm, height * mm)
    pdf.showPage()
    pdf.save()
    logger.info(f"[FLYER] Exported PDF - event_name: {config.event_name}, paper_size: {paper_size}, orientation: {orientation}, dpi: {dpi}")
    return buf.getvalue()


def export_image(config, fmt='png', dpi=300, quality=0.95):
    """Render the flyer as PNG or JPEG bytes."""
    if fmt not in IMAGE_FORMATS:
        raise ValidationError(f"Nicht unterstütztes Format: {fmt}")
    _check_export_options(dpi=dpi)
    img = render_flyer(config, DPI_SCALES[dpi])
    buf = io.BytesIO()
    if IMAGE_FORMATS[fmt] == 'JPEG':
        img.save(buf, format='JPEG', quality=int(quality * 100))
    else:
        img.save(buf, format='PNG')
    return buf.getvalue()


def generate_filename(config, fmt, today=None):
    name = re.sub(r'[^a-z0-9]', '_', config.event_name, flags=re.IGNORECASE).lower()
    stamp = (today or date.today()).isoformat()
    return f"{name}_qr_template_{TEMPLATE_TYPE}_{stamp}.{fmt}"


class FlyerPreview:
    """
    Live preview of a flyer being edited.

    ``update`` merges changes into the config and schedules a re-render;
    edits arriving within the debounce window produce a single render.
    """

    def __init__(self, config, delay=PREVIEW_DEBOUNCE_SECONDS, on_render=None):
        self.config = config
        self.on_render = on_render
        self.render_count = 0
        self._png = None
        self._lock = threading.Lock()
        self._debouncer = Debouncer(delay, self._render)

    def update(self, **changes):
        with self._lock:
            config = replace(self.config, **changes)
            config.validate()
            self.config = config
        self._debouncer.trigger()

    @property
    def pending(self):
        return self._debouncer.pending

    def _render(self):
        with self._lock:
            config = self.config
        buf = io.BytesIO()
        render_flyer(config).save(buf, format='PNG')
        with self._lock:
            self._png = buf.getvalue()
            self.render_count += 1
        if self.on_render is not None:
            self.on_render(self._png)

    def latest_png(self):
        """Last rendered preview; renders synchronously when nothing was rendered yet."""
        with self._lock:
            png = self._png
        if png is None:
            self._render()
            with self._lock:
                png = self._png
        return png

    def cancel(self):
        self._debouncer.cancel()

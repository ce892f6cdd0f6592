from io import BytesIO
from typing import Tuple

from PIL import Image, ImageDraw, ImageFont

from phonepilot.util.log import get_logger

log = get_logger("phonepilot.util.image")

GRID_DIVISIONS = 10
GRID_MAX = 1000


def get_image_size(data: bytes) -> Tuple[int, int]:
    """Returns (width, height) of an encoded PNG/JPEG. Raises ValueError if undecodable."""
    try:
        with Image.open(BytesIO(data)) as img:
            return img.size
    except Exception as e:
        raise ValueError(f"cannot decode image ({len(data)}B): {e}") from e


def _font(size: int):
    for name in ("DejaVuSans.ttf", "arial.ttf"):
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    return ImageFont.load_default()


def process_image(data: bytes, max_dim: int = 1280, grid: bool = True) -> Tuple[bytes, int, int]:
    """
    Resizes image so its longest side is at most `max_dim` (aspect kept),
    optionally overlays a labelled 0-1000 grid, and re-encodes as JPEG.

    Returns (jpeg_bytes, width, height). On any processing error the input
    bytes are returned unchanged together with their decoded size.
    """
    try:
        img = Image.open(BytesIO(data)).convert("RGB")
        w, h = img.size

        if w > max_dim or h > max_dim:
            if w > h:
                new_w = max_dim
                new_h = int(h * (max_dim / w))
            else:
                new_h = max_dim
                new_w = int(w * (max_dim / h))
            img = img.resize((new_w, new_h), Image.Resampling.BICUBIC)
        else:
            new_w, new_h = w, h

        if grid:
            overlay = Image.new("RGBA", img.size, (0, 0, 0, 0))
            draw_ov = ImageDraw.Draw(overlay)
            font = _font(14)

            line_color = (255, 0, 0, 110)
            text_color = (0, 0, 0, 255)
            bg_color = (255, 255, 255, 200)

            step_x = new_w / GRID_DIVISIONS
            step_y = new_h / GRID_DIVISIONS
            label_step = GRID_MAX // GRID_DIVISIONS

            # vertical lines, labels along the top edge
            for i in range(GRID_DIVISIONS + 1):
                x = min(int(i * step_x), new_w - 1)
                draw_ov.line([(x, 0), (x, new_h)], fill=line_color, width=1)
                if 0 < i < GRID_DIVISIONS:
                    text = str(i * label_step)
                    bbox = draw_ov.textbbox((x, 5), text, font=font, anchor="mt")
                    draw_ov.rectangle((bbox[0] - 2, bbox[1] - 2, bbox[2] + 2, bbox[3] + 2), fill=bg_color)
                    draw_ov.text((x, 5), text, fill=text_color, font=font, anchor="mt")

            # horizontal lines, labels along the left edge
            for i in range(GRID_DIVISIONS + 1):
                y = min(int(i * step_y), new_h - 1)
                draw_ov.line([(0, y), (new_w, y)], fill=line_color, width=1)
                if 0 < i < GRID_DIVISIONS:
                    text = str(i * label_step)
                    bbox = draw_ov.textbbox((5, y), text, font=font, anchor="lm")
                    draw_ov.rectangle((bbox[0] - 2, bbox[1] - 2, bbox[2] + 2, bbox[3] + 2), fill=bg_color)
                    draw_ov.text((5, y), text, fill=text_color, font=font, anchor="lm")

            img = Image.alpha_composite(img.convert("RGBA"), overlay).convert("RGB")

        out = BytesIO()
        img.save(out, format="JPEG", quality=80)
        return out.getvalue(), new_w, new_h

    except Exception as e:
        log.warning(f"Failed to process image: {e}")
        w, h = get_image_size(data)
        return data, w, h

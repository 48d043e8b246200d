import base64
from io import BytesIO
from pathlib import Path
from typing import Optional, Union

from PIL import Image, ImageDraw, ImageFont

from ..dom.views import SelectorMap


def _downscale(img: Image.Image, max_size: Optional[int]) -> Image.Image:
    w, h = img.size
    if max_size and max(w, h) > max_size:
        scale = max_size / max(w, h)
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
    return img


def screenshot_to_data_url(b64_png: str, max_size: Optional[int] = None) -> str:
    """Wrap a base64 PNG screenshot as a data URL, optionally downscaled to reduce token usage."""
    if not max_size:
        return f"data:image/png;base64,{b64_png}"

    img = _downscale(Image.open(BytesIO(base64.b64decode(b64_png))), max_size)
    buf = BytesIO()
    img.save(buf, format="PNG")
    b64 = base64.b64encode(buf.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{b64}"


def draw_highlight_indices(
    b64_png: str,
    selector_map: SelectorMap,
    target: Union[str, Path],
) -> Path:
    """Overlay highlight indices on the screenshot, using each element's viewport box."""
    img = Image.open(BytesIO(base64.b64decode(b64_png))).convert("RGB")
    draw = ImageDraw.Draw(img)
    font = ImageFont.load_default()

    for index, element in selector_map.items():
        box = element.viewport_coordinates
        if box is None:
            continue

        x = int(box.x)
        y = int(box.y)
        w = int(box.width)
        h = int(box.height)

        draw.rectangle([x, y, x + w, y + h], outline=(255, 0, 0), width=2)
        draw.text((x + 2, y + 2), str(index), fill=(255, 0, 0), font=font)

    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    img.save(target)
    return target

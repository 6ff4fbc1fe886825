"""Image processing utilities: content sniffing and the transformation pipeline."""
from io import BytesIO
from typing import Callable, Dict, Iterable, Tuple

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from image_processor.exceptions import TransformError, UnknownActionError
from image_processor.models import Action

TARGET_SIZE: Tuple[int, int] = (1600, 900)
RESIZE_QUALITY = 85
DEFAULT_QUALITY = 90
SMART_CROP_STEPS = 9
DEFAULT_WATERMARK_TEXT = "ImageProcessor"


def sniff_content_type(data: bytes) -> str:
    """Derive a MIME type from a buffer with Pillow; application/octet-stream when unrecognized."""
    try:
        with Image.open(BytesIO(data)) as img:
            return Image.MIME.get(img.format, "application/octet-stream")
    except (UnidentifiedImageError, OSError):
        return "application/octet-stream"


def open_image_from_bytes(data: bytes) -> Image.Image:
    """
    Open and fully decode a PIL Image from bytes.

    Raises:
        TransformError: If the bytes are not a decodable image
    """
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise TransformError(f"Invalid image data: {str(e)}") from e
    # Apply EXIF orientation so later geometry matches what viewers show
    return ImageOps.exif_transpose(img)


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    """Encode an image as JPEG at the given quality."""
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    output = BytesIO()
    image.save(output, format="JPEG", quality=quality, optimize=True)
    return output.getvalue()


def resize(data: bytes) -> bytes:
    """Shrink the image to fit inside 1600x900, keeping its aspect ratio. Never enlarges."""
    img = open_image_from_bytes(data).copy()
    img.thumbnail(TARGET_SIZE, Image.Resampling.LANCZOS)
    return encode_jpeg(img, RESIZE_QUALITY)


def _smart_crop_box(img: Image.Image, size: Tuple[int, int]) -> Tuple[int, int, int, int]:
    """
    Pick the crop window with the highest entropy.

    The image must already cover `size`. Candidate windows slide along the
    overflowing axis in SMART_CROP_STEPS even steps.
    """
    width, height = size
    slack_x = img.width - width
    slack_y = img.height - height
    gray = img.convert("L")

    best_box = (0, 0, width, height)
    best_entropy = -1.0
    for step in range(SMART_CROP_STEPS):
        left = round(slack_x * step / (SMART_CROP_STEPS - 1))
        top = round(slack_y * step / (SMART_CROP_STEPS - 1))
        box = (left, top, left + width, top + height)
        entropy = gray.crop(box).entropy()
        if entropy > best_entropy:
            best_box, best_entropy = box, entropy
    return best_box


def miniature(data: bytes) -> bytes:
    """
    Crop to 1600x900, keeping the most detailed region.

    Images larger than the target on both axes are first shrunk to cover it.
    Nothing is enlarged: an axis already shorter than the target keeps its
    length, so an image within 1600x900 comes back at its own size.
    """
    img = open_image_from_bytes(data)
    width, height = TARGET_SIZE
    if img.width <= width and img.height <= height:
        return encode_jpeg(img, DEFAULT_QUALITY)

    scale = max(width / img.width, height / img.height)
    if scale < 1:
        cover = (max(width, round(img.width * scale)), max(height, round(img.height * scale)))
        img = img.resize(cover, Image.Resampling.LANCZOS)
    crop_size = (min(width, img.width), min(height, img.height))
    img = img.crop(_smart_crop_box(img, crop_size))
    return encode_jpeg(img, DEFAULT_QUALITY)


def _load_font(size: int):
    try:
        return ImageFont.truetype("/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf", size)
    except OSError:
        return ImageFont.load_default(size=size)


def watermark(data: bytes, text: str = DEFAULT_WATERMARK_TEXT) -> bytes:
    """Draw semi-transparent text in the lower-right corner."""
    img = open_image_from_bytes(data).convert("RGBA")
    overlay = Image.new("RGBA", img.size, (255, 255, 255, 0))
    draw = ImageDraw.Draw(overlay)
    font = _load_font(max(12, img.width // 30))

    bbox = draw.textbbox((0, 0), text, font=font)
    text_w = bbox[2] - bbox[0]
    text_h = bbox[3] - bbox[1]
    margin = max(4, img.width // 80)
    x = max(0, img.width - text_w - margin)
    y = max(0, img.height - text_h - margin)

    draw.text((x, y), text, fill=(255, 255, 255, 128), font=font)
    return encode_jpeg(Image.alpha_composite(img, overlay).convert("RGB"), DEFAULT_QUALITY)


def grayscale(data: bytes) -> bytes:
    """Black-and-white interpretation of the image."""
    img = open_image_from_bytes(data)
    return encode_jpeg(img.convert("L"), DEFAULT_QUALITY)


def build_transforms(watermark_text: str = DEFAULT_WATERMARK_TEXT) -> Dict[Action, Callable[[bytes], bytes]]:
    """Map every action to its byte-to-byte transformation."""
    return {
        Action.RESIZE: resize,
        Action.MINIATURE: miniature,
        Action.WATERMARK: lambda data: watermark(data, watermark_text),
        Action.GRAYSCALE: grayscale,
    }


def parse_action(name: str) -> Action:
    """Resolve an action name. Raises UnknownActionError for names outside the closed set."""
    try:
        return Action(name)
    except ValueError:
        raise UnknownActionError(f"Unknown action: {name}")


def apply_actions(
    actions: Iterable[str],
    data: bytes,
    watermark_text: str = DEFAULT_WATERMARK_TEXT,
) -> bytes:
    """
    Run the actions in order, feeding each output into the next.

    All names are resolved before any work starts, so an unknown action fails
    without decoding the image. The first failing transformation aborts the
    pipeline.

    Raises:
        UnknownActionError: If a name is outside the closed action set
        TransformError: If a transformation cannot decode its input
    """
    steps = [parse_action(name) for name in actions]
    transforms = build_transforms(watermark_text)
    for action in steps:
        data = transforms[action](data)
    return data

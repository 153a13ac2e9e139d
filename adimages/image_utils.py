"""Image processing utilities: decoding, bounding-box resize, JPEG encoding, size budget convergence."""
import logging
from dataclasses import dataclass, field
from io import BytesIO
from PIL import Image, UnidentifiedImageError
from typing import List, Optional
from adimages.errors import UnsupportedFormatError
from adimages.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConvergenceStep:
    """One encode performed by the convergence loop."""
    quality: int
    width: int
    height: int
    size_bytes: int


@dataclass
class ConvergenceResult:
    """Budget-compliant (or best-effort) encoded image."""
    data: bytes
    width: int
    height: int
    quality: int
    budget_bytes: int
    trace: List[ConvergenceStep] = field(default_factory=list)

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def over_budget(self) -> bool:
        return len(self.data) > self.budget_bytes


def open_image_from_bytes(data: bytes) -> Image.Image:
    """
    Decode raw bytes into an RGB raster ready for JPEG encoding.

    Transparent images are flattened onto a white background.

    Args:
        data: Image bytes

    Returns:
        PIL Image object in RGB mode

    Raises:
        UnsupportedFormatError: If the bytes are not a decodable image
    """
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise UnsupportedFormatError(f"Invalid image data: {e}") from e

    if image.mode in ("RGBA", "LA", "P"):
        image = image.convert("RGBA")
        background = Image.new("RGB", image.size, (255, 255, 255))
        background.paste(image, mask=image.split()[-1])
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def resize_to_fit(image: Image.Image, max_dimension: Optional[int] = None) -> Image.Image:
    """
    Shrink an image so neither side exceeds max_dimension, keeping aspect ratio.

    The larger axis becomes exactly max_dimension; the other is truncated and
    clamped to at least 1px. Images already within bounds are returned as is.
    """
    if max_dimension is None:
        max_dimension = settings.MAX_DIMENSION

    width, height = image.size
    if width <= max_dimension and height <= max_dimension:
        return image

    if width >= height:
        new_width = max_dimension
        new_height = max(1, height * max_dimension // width)
    else:
        new_height = max_dimension
        new_width = max(1, width * max_dimension // height)

    return image.resize((new_width, new_height), Image.Resampling.LANCZOS)


def shrink(image: Image.Image) -> Image.Image:
    """Scale both axes by 0.9 with integer truncation, floor 1px."""
    width, height = image.size
    new_size = (max(1, width * 9 // 10), max(1, height * 9 // 10))
    return image.resize(new_size, Image.Resampling.LANCZOS)


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    """
    Encode an image as JPEG.

    Args:
        image: PIL Image object (RGB)
        quality: JPEG quality (1-100)

    Returns:
        Encoded bytes
    """
    if not 1 <= quality <= 100:
        raise ValueError(f"quality must be within [1, 100], got {quality}")

    if image.mode != "RGB":
        image = image.convert("RGB")

    output = BytesIO()
    image.save(output, format="JPEG", quality=quality, optimize=True)
    return output.getvalue()


def converge(image: Image.Image, budget_bytes: Optional[int] = None) -> ConvergenceResult:
    """
    Re-encode an image until it fits the byte budget or the terminal floor is reached.

    Phase A lowers quality one step at a time from QUALITY_START down to
    QUALITY_FLOOR; every step that is still over budget also shrinks the
    raster by 0.9 while both sides exceed DIMENSION_FLOOR, so the next step
    encodes a smaller image. Phase B keeps the last quality and shrinks by
    0.9 per iteration while both sides exceed DIMENSION_FLOOR.

    An over-budget result is only returned at the floor (quality at
    QUALITY_FLOOR and one side at or below DIMENSION_FLOOR). It is accepted,
    not raised: the caller gets ``over_budget=True``.

    The input image is never mutated.
    """
    if budget_bytes is None:
        budget_bytes = settings.IMAGE_BUDGET_BYTES

    floor = settings.DIMENSION_FLOOR
    trace: List[ConvergenceStep] = []

    def encode(raster: Image.Image, q: int) -> bytes:
        data = encode_jpeg(raster, q)
        trace.append(ConvergenceStep(q, raster.width, raster.height, len(data)))
        return data

    def above_floor(raster: Image.Image) -> bool:
        return raster.width > floor and raster.height > floor

    raster = resize_to_fit(image, settings.MAX_DIMENSION)
    quality = settings.QUALITY_START
    data = encode(raster, quality)
    encoded = raster

    # Phase A: quality steps, each failing step also shrinks the raster
    while len(data) > budget_bytes and quality - settings.QUALITY_STEP >= settings.QUALITY_FLOOR:
        quality -= settings.QUALITY_STEP
        data = encode(raster, quality)
        encoded = raster
        if len(data) > budget_bytes and above_floor(raster):
            raster = shrink(raster)

    # A shrink from the last quality step has not been encoded yet
    if len(data) > budget_bytes and raster is not encoded:
        data = encode(raster, quality)
        encoded = raster

    # Phase B: dimension steps at the last quality
    while len(data) > budget_bytes and above_floor(raster):
        raster = shrink(raster)
        data = encode(raster, quality)
        encoded = raster

    result = ConvergenceResult(
        data=data,
        width=encoded.width,
        height=encoded.height,
        quality=quality,
        budget_bytes=budget_bytes,
        trace=trace,
    )

    if result.over_budget:
        logger.warning(
            "Budget unreachable: %d bytes > %d at quality %d, %dx%d",
            result.size_bytes, budget_bytes, quality, result.width, result.height,
        )
    else:
        logger.info(
            "Compressed image to %d bytes at quality %d, %dx%d after %d encodes",
            result.size_bytes, quality, result.width, result.height, len(trace),
        )
    return result


def transcode(data: bytes, budget_bytes: Optional[int] = None) -> ConvergenceResult:
    """Decode raw upload bytes and converge them to the byte budget."""
    return converge(open_image_from_bytes(data), budget_bytes)

"""
Feature extraction.

Turns raw image bytes into a compact FeatureVector: a median-cut palette of
dominant colours (the main similarity signal), oriented dimensions, and
capture metadata read from EXIF. Everything here is a pure function of the
input bytes and safe to run in parallel on the request pool.
"""
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Hashable, Iterable, Optional, Tuple, Union

from PIL import Image as PILImage, ImageOps, UnidentifiedImageError
from PIL.ExifTags import Base as ExifBase, IFD, TAGS

from megallery.core.exceptions import CorruptImage, MegalleryException, UnsupportedFormat
from megallery.models.domain import FeatureVector, Swatch

logger = logging.getLogger(__name__)

# Pillow format name -> file extension
SUPPORTED_FORMATS = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
    "BMP": "bmp",
    "TIFF": "tiff",
}

PALETTE_SIZE = 8
SAMPLE_EDGE = 128

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"


@dataclass(frozen=True)
class ExtractionResult:
    """Feature vector plus the decode facts ingestion needs."""

    features: FeatureVector
    format: str
    extension: str
    exif: Dict[str, str] = field(default_factory=dict)


def decode_image(raw_bytes: bytes) -> PILImage.Image:
    """
    Decode image bytes fully.

    Raises:
        UnsupportedFormat: Bytes are not a recognized / supported encoding
        CorruptImage: The encoding is recognized but the data does not decode
    """
    try:
        img = PILImage.open(io.BytesIO(raw_bytes))
    except UnidentifiedImageError:
        raise UnsupportedFormat("unrecognized image encoding")
    except (OSError, SyntaxError, ValueError) as e:
        raise CorruptImage(f"could not read image header: {e}")

    if img.format not in SUPPORTED_FORMATS:
        raise UnsupportedFormat(f"unsupported image format: {img.format}")

    try:
        img.load()
    except (OSError, SyntaxError, ValueError, EOFError) as e:
        raise CorruptImage(f"could not decode {img.format} data: {e}")

    return img


def extension_for(img: PILImage.Image) -> str:
    return SUPPORTED_FORMATS[img.format]


def extract_palette(img: PILImage.Image, colors: int = PALETTE_SIZE) -> Tuple[Swatch, ...]:
    """
    Median-cut palette of the dominant colours, most common first.

    The image is downsampled before quantization; the sample is a pure
    function of the pixels so the palette is deterministic.
    """
    sample = img.convert("RGB")
    sample.thumbnail((SAMPLE_EDGE, SAMPLE_EDGE), PILImage.Resampling.BILINEAR)

    quantized = sample.quantize(colors=colors, method=PILImage.Quantize.MEDIANCUT)
    palette = quantized.getpalette() or []
    counts = quantized.getcolors(maxcolors=256) or []
    total = sum(count for count, _ in counts) or 1

    # Sort by share, then palette index for a stable order on ties
    counts.sort(key=lambda item: (-item[0], item[1]))

    swatches = []
    for count, index in counts[:colors]:
        r, g, b = palette[index * 3:index * 3 + 3]
        swatches.append(Swatch(r, g, b, count / total))
    return tuple(swatches)


def _parse_exif_datetime(value) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value.strip().rstrip("\x00"), EXIF_DATETIME_FORMAT)
    except ValueError:
        return None


def extract_capture_metadata(img: PILImage.Image) -> Tuple[dict, Dict[str, str]]:
    """
    Read capture timestamp, orientation and camera from EXIF.

    Returns:
        Tuple of (known fields, raw tag map). Missing EXIF gives empty results.
    """
    try:
        exif = img.getexif()
    except Exception as e:
        logger.debug(f"Unreadable EXIF block ignored: {e}")
        return {}, {}

    if not exif:
        return {}, {}

    raw: Dict[str, str] = {}
    tags = dict(exif)
    try:
        tags.update(exif.get_ifd(IFD.Exif))
    except Exception as e:
        logger.debug(f"Unreadable EXIF sub-IFD ignored: {e}")

    for tag_id, value in tags.items():
        if isinstance(value, bytes) or tag_id in (IFD.Exif, IFD.GPSInfo):
            continue
        raw[TAGS.get(tag_id, str(tag_id))] = str(value)

    captured_at = (
        _parse_exif_datetime(tags.get(ExifBase.DateTimeOriginal))
        or _parse_exif_datetime(tags.get(ExifBase.DateTime))
    )

    orientation = tags.get(ExifBase.Orientation)
    if not isinstance(orientation, int) or not 1 <= orientation <= 8:
        orientation = None

    make = str(tags.get(ExifBase.Make, "")).strip().rstrip("\x00")
    model = str(tags.get(ExifBase.Model, "")).strip().rstrip("\x00")
    camera = " ".join(part for part in (make, model) if part) or None

    known = {
        "captured_at": captured_at,
        "orientation": orientation,
        "camera": camera,
    }
    return known, raw


def extract_from_image(img: PILImage.Image) -> ExtractionResult:
    """Compute the feature vector of an already decoded image."""
    capture, raw_exif = extract_capture_metadata(img)
    oriented = ImageOps.exif_transpose(img)

    features = FeatureVector(
        palette=extract_palette(oriented),
        width=oriented.width,
        height=oriented.height,
        **capture,
    )
    return ExtractionResult(
        features=features,
        format=img.format,
        extension=extension_for(img),
        exif=raw_exif,
    )


def extract(raw_bytes: bytes) -> ExtractionResult:
    """
    Extract the feature vector from raw image bytes.

    Raises:
        UnsupportedFormat: Unrecognized encoding
        CorruptImage: Decode failure
    """
    with decode_image(raw_bytes) as img:
        return extract_from_image(img)


def extract_many(
    items: Iterable[Tuple[Hashable, bytes]]
) -> Dict[Hashable, Union[ExtractionResult, MegalleryException]]:
    """
    Extract features for a batch, isolating per-image failures.

    Returns:
        Mapping of key to its ExtractionResult or the error that image raised
    """
    results: Dict[Hashable, Union[ExtractionResult, MegalleryException]] = {}
    for key, raw_bytes in items:
        try:
            results[key] = extract(raw_bytes)
        except (UnsupportedFormat, CorruptImage) as e:
            logger.warning(f"Feature extraction failed for {key}: {e.message}")
            results[key] = e
    return results

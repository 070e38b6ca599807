"""
Utility functions for the pixel art application: image file helpers and
conversions between Pillow images and PixelBuffer.
"""

import json
import os
from typing import List, Tuple, Dict, Optional
from PIL import Image
import numpy as np

from pixelart_lib import PixelBuffer

__all__ = [
    # Functions
    'rgb_to_hex',
    'save_palette_to_file',
    'calculate_dimensions',
    'validate_image_file',
    'get_image_info',
    'ensure_rgb',
    'image_to_buffer',
    'buffer_to_image',
    'load_image',
    'save_image',
    'IMAGE_EXTENSIONS',
    'DEFAULT_MAX_SIZE',
]

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}

# Processing box the editor draws into before running the pipeline
DEFAULT_MAX_SIZE = 400


def rgb_to_hex(rgb: Tuple[int, int, int]) -> str:
    """
    Convert RGB tuple to hex color string.

    Args:
        rgb: RGB tuple (r, g, b)

    Returns:
        Hex string like "#ff0000"
    """
    return f'#{rgb[0]:02x}{rgb[1]:02x}{rgb[2]:02x}'


def save_palette_to_file(palette: List[Tuple[int, int, int]], filepath: str,
                         name: str = "pixel_pie") -> None:
    """
    Save a generated palette as a JSON list of {'name', 'colors'} entries,
    colors written as hex strings.

    Args:
        palette: List of RGB tuples
        filepath: Path to save JSON file
        name: Palette name stored in the file
    """
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)
    entry = {'name': name, 'colors': [rgb_to_hex(c) for c in palette]}
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump([entry], f, indent=4)


def calculate_dimensions(img_width: float, img_height: float,
                         max_width: float = DEFAULT_MAX_SIZE,
                         max_height: float = DEFAULT_MAX_SIZE) -> Tuple[int, int]:
    """
    Fit an image into the processing box, keeping the aspect ratio.
    Only the longer side is checked against its limit (height for squares).

    Args:
        img_width: Original width
        img_height: Original height
        max_width: Box width
        max_height: Box height

    Returns:
        Tuple of (width, height), each at least 1
    """
    width, height = img_width, img_height
    if width > height:
        if width > max_width:
            height = (height * max_width) / width
            width = max_width
    else:
        if height > max_height:
            width = (width * max_height) / height
            height = max_height
    # canvas dimensions truncate
    return max(1, int(width)), max(1, int(height))


def validate_image_file(filepath: str) -> bool:
    """
    Check if file is a valid image file.

    Args:
        filepath: Path to image file

    Returns:
        True if valid image file
    """
    ext = os.path.splitext(filepath)[1].lower()
    return ext in IMAGE_EXTENSIONS and os.path.isfile(filepath)


def get_image_info(filepath: str) -> Optional[Dict]:
    """
    Get basic image information.

    Args:
        filepath: Path to image file

    Returns:
        Dictionary with width, height, mode, format, or None if unreadable
    """
    try:
        with Image.open(filepath) as img:
            return {
                'width': img.width,
                'height': img.height,
                'mode': img.mode,
                'format': img.format
            }
    except (OSError, ValueError):
        return None


def ensure_rgb(image: Image.Image) -> Image.Image:
    """
    Ensure image is in RGB or RGBA mode (alpha is kept when present).
    """
    if image.mode in ('RGB', 'RGBA'):
        return image
    has_alpha = image.mode in ('LA', 'PA') or (image.mode == 'P' and 'transparency' in image.info)
    return image.convert('RGBA' if has_alpha else 'RGB')


def image_to_buffer(image: Image.Image) -> PixelBuffer:
    """Convert a Pillow image to a PixelBuffer."""
    return PixelBuffer(np.array(ensure_rgb(image), dtype=np.uint8))


def buffer_to_image(buffer: PixelBuffer) -> Image.Image:
    """Convert a PixelBuffer to a Pillow image (RGB or RGBA)."""
    return Image.fromarray(buffer.pixels)


def load_image(filepath: str, max_size: Optional[int] = DEFAULT_MAX_SIZE) -> PixelBuffer:
    """
    Decode an image file and scale it into the processing box.

    Args:
        filepath: Path to image file
        max_size: Box edge in pixels; None keeps the original size

    Returns:
        PixelBuffer of the (possibly downscaled) image
    """
    with Image.open(filepath) as img:
        image = ensure_rgb(img).copy()
    if max_size:
        size = calculate_dimensions(image.width, image.height, max_size, max_size)
        if size != image.size:
            image = image.resize(size, Image.Resampling.BILINEAR)
    return image_to_buffer(image)


def save_image(buffer: PixelBuffer, filepath: str, multiplier: int = 1) -> None:
    """
    Encode a PixelBuffer to disk, optionally enlarged with nearest-neighbor.

    Args:
        buffer: Image to save
        filepath: Output path; the format follows the extension
        multiplier: Integer upscale factor for the saved file
    """
    image = buffer_to_image(buffer)
    if multiplier and multiplier > 1:
        image = image.resize((image.width * multiplier, image.height * multiplier),
                             Image.Resampling.NEAREST)
    ext = os.path.splitext(filepath)[1].lower()
    if ext in ('.jpg', '.jpeg', '.bmp') and image.mode == 'RGBA':
        image = image.convert('RGB')
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)
    image.save(filepath)

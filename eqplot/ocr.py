"""Text extraction from equation images."""

import logging
import os

import pytesseract
from PIL import Image, ImageOps

from . import config

logger = logging.getLogger(__name__)

if config.TESSERACT_CMD:
    pytesseract.pytesseract.tesseract_cmd = config.TESSERACT_CMD


def is_plottable_text(text: str) -> bool:
    """False for blank text and for the OCR failure sentinel."""
    if text is None:
        return False
    stripped = text.strip()
    return bool(stripped) and stripped.lower() != config.OCR_ERROR.lower()


def extract_text(image_path: str, language: str = None) -> str:
    """Runs OCR on an image file.

    Returns the extracted text, or the OCR_ERROR sentinel when the file is
    missing or extraction fails.
    """
    if not image_path or not os.path.isfile(image_path):
        logger.error(f"OCR input not found: {image_path}")
        return config.OCR_ERROR

    try:
        with Image.open(image_path) as image:
            # Grayscale tends to help tesseract with handwritten and photographed equations
            prepared = ImageOps.grayscale(image)
            text = pytesseract.image_to_string(prepared, lang=language or config.OCR_LANGUAGE)
    except (OSError, pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
        logger.error(f"OCR failed for {image_path}: {e}")
        return config.OCR_ERROR

    logger.info(f"Extracted {len(text.strip())} characters from {image_path}")
    return text.strip()

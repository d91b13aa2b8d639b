"""Receipt OCR: text extraction with Tesseract and hint parsing.

Results are annotations on the stored receipt. Nothing here may change an
expense's amount, category or workflow.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import pytesseract
from flask import current_app, has_app_context
from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

AMOUNT_PATTERN = re.compile(
    r"(?:total|amount|sum)[\s:]*[$£€¥₹]?\s*(\d+(?:[.,]\d{2})?)"
    r"|[$£€¥₹]\s*(\d+(?:[.,]\d{2})?)"
    r"|(\d+(?:[.,]\d{2})?)\s*[$£€¥₹]",
    re.IGNORECASE,
)
DATE_PATTERN = re.compile(
    r"\d{4}[/.-]\d{1,2}[/.-]\d{1,2}|\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}|[A-Za-z]{3,9}\s+\d{1,2},?\s+\d{4}"
)
DATE_FORMATS = (
    "%Y-%m-%d", "%Y/%m/%d", "%Y.%m.%d",
    "%m/%d/%Y", "%m-%d-%Y", "%d.%m.%Y", "%m/%d/%y",
    "%B %d, %Y", "%B %d %Y", "%b %d, %Y", "%b %d %Y",
)
MERCHANT_EXCLUDES = ("receipt", "invoice", "bill", "total", "amount", "date", "time", "tax", "subtotal")
CATEGORY_KEYWORDS = {
    "Travel": ("uber", "lyft", "taxi", "airline", "hotel", "airport", "flight", "train"),
    "Meals": ("restaurant", "cafe", "coffee", "food", "pizza", "burger", "dining", "bar"),
    "Office Supplies": ("staples", "office", "depot", "supplies", "paper", "pen"),
    "Transportation": ("gas", "fuel", "parking", "metro", "bus", "transit"),
    "Software": ("microsoft", "adobe", "google", "software", "subscription", "saas"),
    "Marketing": ("facebook", "google ads", "marketing", "advertising", "promotion"),
}


def _parse_amount(text: str) -> Optional[Decimal]:
    match = AMOUNT_PATTERN.search(text)
    if not match:
        return None
    raw = next(group for group in match.groups() if group)
    try:
        return Decimal(raw.replace(",", "."))
    except InvalidOperation:
        return None


def _parse_date(text: str) -> Optional[date]:
    match = DATE_PATTERN.search(text)
    if not match:
        return None
    candidate = match.group(0)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    return None


def _guess_merchant(lines) -> Optional[str]:
    for line in lines[:5]:
        lowered = line.lower()
        if len(line) <= 3 or any(word in lowered for word in MERCHANT_EXCLUDES):
            continue
        if re.match(r"^\d+[./-]\d+", line) or re.match(r"^\$?\d+\.?\d*$", line):
            continue
        return line
    return None


def _guess_category(text: str) -> Optional[str]:
    lowered = text.lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return None


def extract_receipt_data(text: str) -> Dict[str, Any]:
    """Pull amount, date, merchant and category hints out of receipt text."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return {
        "text": text,
        "amount": _parse_amount(text),
        "date": _parse_date(text),
        "merchant": _guess_merchant(lines),
        "category": _guess_category(text),
    }


def extract_text(file_path: str) -> str:
    with Image.open(file_path) as image:
        prepared = ImageOps.autocontrast(ImageOps.grayscale(image))
        return pytesseract.image_to_string(prepared)


def process_receipt(file_path: str, mimetype: str) -> Dict[str, Any]:
    """Run OCR on an uploaded image. Returns no hints when OCR is unavailable."""
    enabled = current_app.config.get("OCR_ENABLED", True) if has_app_context() else True
    if not enabled or not mimetype.startswith("image/"):
        return {}

    try:
        text = extract_text(file_path)
    except (pytesseract.TesseractError, OSError) as exc:
        logger.warning("OCR failed for %s: %s", file_path, exc)
        return {}
    return extract_receipt_data(text)

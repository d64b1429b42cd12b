"""
Parse the csgt.vn result page into Violation records.

The page renders every violation as a run of Bootstrap `.form-group` rows
inside `#bodyPrint123` (older markup: `#bodyPrint`). A row labelled
"Biển kiểm soát" opens a new record; the following labelled rows fill its
fields. The resolution-office rows carry no label and are matched by text.
"""

from __future__ import annotations

import logging
import re
import unicodedata

from bs4 import BeautifulSoup

from phatnguoi.csgt_client import ParseError
from phatnguoi.models import Violation

logger = logging.getLogger(__name__)

PLATE_LABEL = "Biển kiểm soát"

# label substring -> Violation field
_LABEL_FIELDS = (
    ("Màu biển", "plate_color"),
    ("Loại phương tiện", "vehicle_type"),
    ("Thời gian vi phạm", "violation_time"),
    ("Địa điểm vi phạm", "location"),
    ("Hành vi vi phạm", "violation"),
    ("Trạng thái", "status"),
    ("Mức phạt", "fine"),
    ("Nơi giải quyết", "resolution_place"),
)

# Only the issuing-unit text signals that violations were rendered; the plate
# label also appears on the search form of an empty result page.
_VIOLATION_MARKER = "Đội CSGT"

_UNPAID_PATTERNS = (
    re.compile(r"chưa xử phạt"),
    re.compile(r"chưa nộp"),
    re.compile(r"unpaid"),
    re.compile(r"not yet"),
    re.compile(r"\bnot\b"),
)
_PAID_PATTERNS = (
    re.compile(r"đã xử phạt"),
    re.compile(r"đã nộp"),
    re.compile(r"paid"),
    re.compile(r"processed"),
    re.compile(r"resolved"),
)


def _nfc(text: str) -> str:
    return unicodedata.normalize("NFC", text)


def _clean(text: str) -> str:
    return " ".join(_nfc(text).split())


def parse_result_html(html: str) -> list[Violation]:
    """Extract violations from a result page.

    Returns [] when the plate has no violations. Raises ParseError when the
    page clearly mentions violations but no block could be read.
    """
    html = _nfc(html or "")
    soup = BeautifulSoup(html, "html.parser")
    body = soup.select("#bodyPrint123, #bodyPrint")

    violations: list[Violation] = []
    current: dict | None = None
    count = 0

    for container in body:
        for group in container.select(".form-group"):
            label_el = group.find("label")
            label = _clean(label_el.get_text()) if label_el else ""
            value_el = group.select_one(".col-md-9")
            value = _clean(value_el.get_text()) if value_el else ""
            text = _clean(group.get_text())

            if PLATE_LABEL in label:
                if current:
                    violations.append(Violation(**current))
                count += 1
                current = {"plate": value, "violation_number": count}
                continue

            if current is None:
                continue

            if label:
                for needle, field_name in _LABEL_FIELDS:
                    if needle in label:
                        current[field_name] = value
                        break
            elif text:
                if "Đội CSGT" in text or "Phòng CSGT" in text:
                    current["resolution_department"] = text
                elif "Địa chỉ:" in text:
                    current["resolution_address"] = text.replace("Địa chỉ:", "").strip()
                elif "Số điện thoại" in text:
                    phone = text.replace("Số điện thoại liên hệ:", "")
                    current["resolution_phone"] = phone.replace("Số điện thoại:", "").strip()

    if current:
        violations.append(Violation(**current))

    if not violations and _VIOLATION_MARKER in html:
        logger.error(
            "Result page mentions violations but no block could be parsed (%d bytes)",
            len(html),
        )
        raise ParseError("Violation markers found but the result structure was not recognised")

    logger.debug("Parsed %d violations", len(violations))
    return violations


def classify_status(status: str | None) -> str | None:
    """Return "paid", "unpaid" or None for a raw status string.

    Unpaid phrases are checked first so that "unpaid" or "chưa nộp" never
    read as paid.
    """
    if not status:
        return None
    s = _nfc(status).lower()
    if any(p.search(s) for p in _UNPAID_PATTERNS):
        return "unpaid"
    if any(p.search(s) for p in _PAID_PATTERNS):
        return "paid"
    return None


def count_paid_unpaid(violations: list[Violation]) -> tuple[int, int]:
    paid = unpaid = 0
    for v in violations:
        kind = classify_status(v.status)
        if kind == "paid":
            paid += 1
        elif kind == "unpaid":
            unpaid += 1
    return paid, unpaid

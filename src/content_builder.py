"""
content_builder.py

Turns gathered PDF text and web content into the AI request content.

Sanitisation strips what the extraction service's JSON validation rejects:
NULs and C0/C1 control characters (newline, CR and tab survive), lone
surrogates, the replacement character and BOM, exotic spaces and zero-width
characters. Line endings are normalised and runs of blank lines capped.
"""

import re
from dataclasses import dataclass
from typing import Optional

from models import SOURCE_PDF, SOURCE_WEB

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F]")
_SURROGATES    = re.compile(r"[\ud800-\udfff]")
_ODD_SPACES    = re.compile(r"[\u00a0\u2000-\u200a\u202f\u205f\u3000]")
_ZERO_WIDTH    = re.compile(r"[\u200b-\u200f\u2028-\u202e\u2060-\u206f\ufeff\ufffd]")
_MANY_NEWLINES = re.compile(r"\n{4,}")


def sanitize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    cleaned = _CONTROL_CHARS.sub("", text)
    cleaned = _SURROGATES.sub("", cleaned)
    cleaned = _ZERO_WIDTH.sub("", cleaned)
    cleaned = _ODD_SPACES.sub(" ", cleaned)
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _MANY_NEWLINES.sub("\n\n\n", cleaned)
    return cleaned.strip()


@dataclass(frozen=True)
class CombinedContent:
    pdf_text: str
    web_content: str
    combined: str
    source_labels: tuple[str, ...]


def build_combined_content(
    pdf_text: str,
    web_content: str,
    url: Optional[str],
) -> Optional[CombinedContent]:
    """
    Sanitise both sources and combine them, web before PDF.

    Precedence: web+pdf > pdf-only > web-only. Returns None when neither
    source has any text left after sanitising.
    """
    pdf_clean = sanitize_text(pdf_text)
    web_clean = sanitize_text(web_content)
    web_header = f"[WEB CONTENT FROM {url or 'unknown URL'}]"

    if web_clean and pdf_clean:
        combined = f"{web_header}\n{web_clean}\n\n[PDF CONTENT]\n{pdf_clean}"
        labels: tuple[str, ...] = (SOURCE_WEB, SOURCE_PDF)
    elif pdf_clean:
        combined = f"[PDF CONTENT]\n{pdf_clean}"
        labels = (SOURCE_PDF,)
    elif web_clean:
        combined = f"{web_header}\n{web_clean}"
        labels = (SOURCE_WEB,)
    else:
        return None

    return CombinedContent(
        pdf_text=pdf_clean,
        web_content=web_clean,
        combined=combined,
        source_labels=labels,
    )
